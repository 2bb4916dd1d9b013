from __future__ import annotations

from datetime import datetime
from typing import Dict, Literal, Optional, List

from pydantic import BaseModel, ConfigDict, Field


class PatientCreateRequest(BaseModel):
    name: str
    age: Optional[int] = None
    gender: Optional[str] = None
    condition: Optional[str] = None


class PatientUpdateRequest(PatientCreateRequest):
    pass


class PatientSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    age: Optional[int]
    gender: Optional[str]
    condition: Optional[str]
    persona: Optional[str]
    created_at: datetime


class PatientWithConsultStatusSchema(PatientSchema):
    has_active_consultation: bool


class PatientChatSummarySchema(BaseModel):
    patient: PatientSchema
    last_content: Optional[str] = None
    last_created_at: Optional[datetime] = None


class ImportRequest(BaseModel):
    text: str


class ImportResponse(BaseModel):
    persona: str


class ChatMessageSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    role: str
    content: str
    created_at: datetime


class PatientMessageRequest(BaseModel):
    message: str
    history: List[Dict[str, str]] = Field(default_factory=list)


class PatientMessageResponse(BaseModel):
    response: str
    intent: str
    related_facts: str = ""
    error: Optional[str] = None
    degraded: List[str] = Field(default_factory=list)


class StaffMessageRequest(BaseModel):
    message: str


class StaffMessageResponse(BaseModel):
    message_id: int


class MemorySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    source: Optional[str]
    created_at: datetime


class RetrievedItemSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    score: float
    source: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None


class MessageAnalysisResponse(BaseModel):
    related_memories: List[RetrievedItemSchema]
    related_knowledge: List[RetrievedItemSchema]


class ConsultationRequest(BaseModel):
    trigger: Literal["ai", "manual"] = "manual"


class ConsultationTicketSchema(BaseModel):
    consultation_id: int
    token: str
    pay_link: str
    status: str


class ConsultationSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    status: str
    fee_cents: int
    trigger: str
    created_at: datetime
    paid_at: Optional[datetime]
    ended_at: Optional[datetime]


class DoctorVisiblePatientSchema(BaseModel):
    consultation: ConsultationSchema
    patient: PatientSchema


class EndConsultationResponse(BaseModel):
    success: bool


class CopilotRequest(BaseModel):
    speaker: Literal["assistant", "doctor"] = "assistant"


class CopilotResponse(BaseModel):
    draft: str


class KnowledgeCreateRequest(BaseModel):
    content: str
    category: str = "general"


class KnowledgeUpdateRequest(BaseModel):
    content: str


class KnowledgeImportRequest(BaseModel):
    text: str


class KnowledgeImportResponse(BaseModel):
    count: int


class KnowledgeItemSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    category: str
    created_at: datetime
