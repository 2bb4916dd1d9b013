from __future__ import annotations

from typing import List
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from medchat.errors import KnowledgeItemNotFoundError, PatientNotFoundError
from medchat.models import ConsultationTrigger
from medchat.rag.copilot import generate_copilot_draft
from medchat.services.container import ServiceContainer
from .schemas import (
    ChatMessageSchema,
    ConsultationRequest,
    ConsultationSchema,
    ConsultationTicketSchema,
    CopilotRequest,
    CopilotResponse,
    DoctorVisiblePatientSchema,
    EndConsultationResponse,
    ImportRequest,
    ImportResponse,
    KnowledgeCreateRequest,
    KnowledgeImportRequest,
    KnowledgeImportResponse,
    KnowledgeItemSchema,
    KnowledgeUpdateRequest,
    MemorySchema,
    MessageAnalysisResponse,
    PatientChatSummarySchema,
    PatientCreateRequest,
    PatientMessageRequest,
    PatientMessageResponse,
    PatientSchema,
    PatientUpdateRequest,
    PatientWithConsultStatusSchema,
    RetrievedItemSchema,
    StaffMessageRequest,
    StaffMessageResponse,
)

router = APIRouter()
pay_router = APIRouter()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _require_patient(container: ServiceContainer, patient_id: str) -> None:
    try:
        container.patients.get_patient(patient_id)
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ----------------------------------------------------------------------
# Patients
# ----------------------------------------------------------------------


@router.post("/patients", response_model=PatientSchema, status_code=201)
def create_patient(
    payload: PatientCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> PatientSchema:
    patient = container.patients.create_patient(
        name=payload.name,
        age=payload.age,
        gender=payload.gender,
        condition=payload.condition,
    )
    return PatientSchema.model_validate(patient)


@router.get("/patients", response_model=List[PatientWithConsultStatusSchema])
def list_patients(container: ServiceContainer = Depends(get_container)):
    return [
        PatientWithConsultStatusSchema(
            **PatientSchema.model_validate(p.patient).model_dump(),
            has_active_consultation=p.has_active_consultation,
        )
        for p in container.patients.list_patients()
    ]


@router.get("/patients/{patient_id}", response_model=PatientWithConsultStatusSchema)
def get_patient(patient_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        p = container.patients.get_patient_with_consult_status(patient_id)
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PatientWithConsultStatusSchema(
        **PatientSchema.model_validate(p.patient).model_dump(),
        has_active_consultation=p.has_active_consultation,
    )


@router.put("/patients/{patient_id}", response_model=PatientSchema)
def update_patient(
    patient_id: str,
    payload: PatientUpdateRequest,
    container: ServiceContainer = Depends(get_container),
) -> PatientSchema:
    try:
        patient = container.patients.update_patient(
            patient_id,
            name=payload.name,
            age=payload.age,
            gender=payload.gender,
            condition=payload.condition,
        )
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PatientSchema.model_validate(patient)


@router.delete("/patients/{patient_id}", status_code=204)
def delete_patient(patient_id: str, container: ServiceContainer = Depends(get_container)) -> None:
    container.patients.delete_patient(patient_id)


@router.post("/patients/{patient_id}/import", response_model=ImportResponse)
def import_patient_data(
    patient_id: str,
    payload: ImportRequest,
    container: ServiceContainer = Depends(get_container),
) -> ImportResponse:
    try:
        persona = container.patients.import_patient_data(patient_id, payload.text)
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ImportResponse(persona=persona)


# ----------------------------------------------------------------------
# Conversation
# ----------------------------------------------------------------------


@router.get("/chats", response_model=List[PatientChatSummarySchema])
def chat_list(container: ServiceContainer = Depends(get_container)):
    return [
        PatientChatSummarySchema(
            patient=PatientSchema.model_validate(s.patient),
            last_content=s.last_content,
            last_created_at=s.last_created_at,
        )
        for s in container.patients.chat_list()
    ]


@router.get("/patients/{patient_id}/messages", response_model=List[ChatMessageSchema])
def get_chat_history(patient_id: str, container: ServiceContainer = Depends(get_container)):
    _require_patient(container, patient_id)
    return [ChatMessageSchema.model_validate(m) for m in container.patients.chat_history(patient_id)]


@router.post("/patients/{patient_id}/messages", response_model=PatientMessageResponse)
def post_patient_message(
    patient_id: str,
    payload: PatientMessageRequest,
    container: ServiceContainer = Depends(get_container),
) -> PatientMessageResponse:
    """
    Run one inbound patient message through the intake controller.
    An empty response means the assistant deliberately stays silent.
    """
    _require_patient(container, patient_id)
    result = container.agent.handle_message(patient_id, payload.message, payload.history)
    return PatientMessageResponse(
        response=result.response,
        intent=result.intent,
        related_facts=result.related_facts,
        error=result.error,
        degraded=result.degraded,
    )


@router.post("/patients/{patient_id}/assistant-messages", response_model=StaffMessageResponse)
def post_assistant_message(
    patient_id: str,
    payload: StaffMessageRequest,
    container: ServiceContainer = Depends(get_container),
) -> StaffMessageResponse:
    try:
        message_id = container.patients.send_assistant_message(patient_id, payload.message)
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return StaffMessageResponse(message_id=message_id)


@router.post("/patients/{patient_id}/doctor-messages", response_model=StaffMessageResponse)
def post_doctor_message(
    patient_id: str,
    payload: StaffMessageRequest,
    container: ServiceContainer = Depends(get_container),
) -> StaffMessageResponse:
    try:
        message_id = container.patients.send_doctor_message(patient_id, payload.message)
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return StaffMessageResponse(message_id=message_id)


@router.get("/patients/{patient_id}/memories", response_model=List[MemorySchema])
def get_memories(patient_id: str, container: ServiceContainer = Depends(get_container)):
    _require_patient(container, patient_id)
    return [MemorySchema.model_validate(m) for m in container.patients.list_memories(patient_id)]


@router.get(
    "/patients/{patient_id}/messages/{message_id}/analysis",
    response_model=MessageAnalysisResponse,
)
def get_message_analysis(
    patient_id: str,
    message_id: int,
    container: ServiceContainer = Depends(get_container),
) -> MessageAnalysisResponse:
    analysis = container.patients.message_analysis(patient_id, message_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="No analysis available for this message.")
    return MessageAnalysisResponse(
        related_memories=[RetrievedItemSchema.model_validate(i) for i in analysis.related_memories],
        related_knowledge=[RetrievedItemSchema.model_validate(i) for i in analysis.related_knowledge],
    )


# ----------------------------------------------------------------------
# Consultations
# ----------------------------------------------------------------------


@router.post("/patients/{patient_id}/consultations", response_model=ConsultationTicketSchema)
def request_consultation(
    patient_id: str,
    payload: ConsultationRequest,
    container: ServiceContainer = Depends(get_container),
) -> ConsultationTicketSchema:
    _require_patient(container, patient_id)
    ticket = container.consultations.request(patient_id, ConsultationTrigger(payload.trigger))
    return ConsultationTicketSchema(
        consultation_id=ticket.consultation_id,
        token=ticket.token,
        pay_link=ticket.pay_link,
        status=ticket.status.value,
    )


@router.post("/consultations/{consultation_id}/end", response_model=EndConsultationResponse)
def end_consultation(
    consultation_id: int,
    container: ServiceContainer = Depends(get_container),
) -> EndConsultationResponse:
    result = container.consultations.end(consultation_id)
    if not result.success:
        raise HTTPException(status_code=404, detail=f"Consultation {consultation_id} not found")
    return EndConsultationResponse(success=True)


@router.get("/doctor/patients", response_model=List[DoctorVisiblePatientSchema])
def doctor_visible_patients(container: ServiceContainer = Depends(get_container)):
    return [
        DoctorVisiblePatientSchema(
            consultation=ConsultationSchema.model_validate(c),
            patient=PatientSchema.model_validate(p),
        )
        for c, p in container.consultations.doctor_visible_patients()
    ]


@router.post("/patients/{patient_id}/copilot", response_model=CopilotResponse)
def doctor_copilot(
    patient_id: str,
    payload: CopilotRequest,
    container: ServiceContainer = Depends(get_container),
) -> CopilotResponse:
    try:
        draft = generate_copilot_draft(
            container.db,
            container.llm,
            container.embedder,
            patient_id,
            speaker=payload.speaker,
        )
    except PatientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CopilotResponse(draft=draft)


# ----------------------------------------------------------------------
# Knowledge base
# ----------------------------------------------------------------------


@router.get("/knowledge", response_model=List[KnowledgeItemSchema])
def list_knowledge(container: ServiceContainer = Depends(get_container)):
    return [KnowledgeItemSchema.model_validate(k) for k in container.knowledge.list_items()]


@router.post("/knowledge", response_model=KnowledgeItemSchema, status_code=201)
def add_knowledge(
    payload: KnowledgeCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> KnowledgeItemSchema:
    item = container.knowledge.add(payload.content, payload.category)
    return KnowledgeItemSchema.model_validate(item)


@router.post("/knowledge/import", response_model=KnowledgeImportResponse)
def import_knowledge(
    payload: KnowledgeImportRequest,
    container: ServiceContainer = Depends(get_container),
) -> KnowledgeImportResponse:
    return KnowledgeImportResponse(count=container.knowledge.bulk_import(payload.text))


@router.put("/knowledge/{item_id}", response_model=KnowledgeItemSchema)
def update_knowledge(
    item_id: int,
    payload: KnowledgeUpdateRequest,
    container: ServiceContainer = Depends(get_container),
) -> KnowledgeItemSchema:
    try:
        item = container.knowledge.update(item_id, payload.content)
    except KnowledgeItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return KnowledgeItemSchema.model_validate(item)


@router.delete("/knowledge/{item_id}", status_code=204)
def delete_knowledge(item_id: int, container: ServiceContainer = Depends(get_container)) -> None:
    try:
        container.knowledge.delete(item_id)
    except KnowledgeItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ----------------------------------------------------------------------
# Pay link
# ----------------------------------------------------------------------


@pay_router.get("/patient/pay/{token}")
def redeem_pay_link(token: str, container: ServiceContainer = Depends(get_container)):
    """
    Demo payment: following the link marks the consultation paid.
    Repeat visits are harmless; unknown or stale tokens land on a failure page.
    """
    result = container.consultations.redeem(token)
    if not result.success or not result.patient_id:
        return RedirectResponse("/patient?pay=failed", status_code=303)
    return RedirectResponse(
        f"/patient/chat/{quote(result.patient_id, safe='')}?paid=1",
        status_code=303,
    )
