from .intents import Intent

__all__ = ["Intent"]
