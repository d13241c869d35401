from pydantic import BaseModel, Field
from typing import List, Optional


class InstructionModel(BaseModel):
    program_id: str
    data: str
    accounts: List[str] = Field(default_factory=list)


class BatchSignature(BaseModel):
    signer: str
    signature: str


class BatchRequest(BaseModel):
    instructions: List[InstructionModel]
    signatures: List[BatchSignature] = Field(default_factory=list)


class AirdropRequest(BaseModel):
    address: str
    amount: int = Field(gt=0)


class ReceiptModel(BaseModel):
    batch_id: str
    status: str
    identities: List[str]
    error: Optional[dict] = None
    failed_instruction: Optional[int] = None
    logs: List[str]
    timestamp: str
