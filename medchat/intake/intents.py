from enum import Enum


class Intent(str, Enum):
    MEDICAL_CONSULT = "medical_consult"
    CHITCHAT_ADMIN = "chitchat_admin"
