class MedchatError(Exception):
    """Base class for domain errors raised by medchat services."""


class PatientNotFoundError(MedchatError):
    def __init__(self, patient_id: str):
        super().__init__(f"Patient {patient_id} not found")
        self.patient_id = patient_id


class KnowledgeItemNotFoundError(MedchatError):
    def __init__(self, item_id: int):
        super().__init__(f"Knowledge item {item_id} not found")
        self.item_id = item_id
