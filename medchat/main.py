from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medchat import __version__
from medchat.api.routes import pay_router, router as api_router
from medchat.config import get_settings
from medchat.logging_config import configure_logging
from medchat.services.container import ServiceContainer, build_container


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the API. Pass a prepared container to run against other
    clients or another database; otherwise one is built at startup
    from the environment.
    """
    app = FastAPI(title="Medchat API", version=__version__)
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # for dev; tighten in prod
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.on_event("startup")
    def on_startup() -> None:
        settings = get_settings()
        configure_logging(settings.log_level)
        if app.state.container is None:
            app.state.container = build_container(settings)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if app.state.container is not None:
            app.state.container.close()

    @app.get("/")
    def root():
        return {"message": "Medchat API is running"}

    app.include_router(api_router, prefix="/api")
    app.include_router(pay_router)
    return app


app = create_app()
