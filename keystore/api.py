"""
HTTP surface for the keystore host runtime.

Clients submit fully formed, signed batches; reads expose identities,
credential records, balances and the execution journal.
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException

from .config import load_settings
from .instructions import Instruction
from .logging_config import configure_logging
from .models import AirdropRequest, BatchRequest, ReceiptModel
from .runtime import Batch, BatchStatus, Runtime

logger = logging.getLogger(__name__)

app = FastAPI(title="Keystore")

SETTINGS = load_settings()
RUNTIME = Runtime(SETTINGS)


def reset_runtime() -> Runtime:
    """Replace the runtime with an empty one (tests, local dev)."""
    global RUNTIME
    RUNTIME = Runtime(SETTINGS)
    return RUNTIME


def parse_hex(value: str, field_name: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise HTTPException(400, f"INVALID_HEX: {field_name}")


def batch_from_request(req: BatchRequest) -> Batch:
    instructions = tuple(
        Instruction(
            program_id=parse_hex(ix.program_id, "program_id"),
            data=parse_hex(ix.data, "data"),
            accounts=tuple(parse_hex(a, "accounts") for a in ix.accounts)
        )
        for ix in req.instructions
    )
    signatures = tuple(
        (parse_hex(s.signer, "signer"), parse_hex(s.signature, "signature"))
        for s in req.signatures
    )
    return Batch(instructions=instructions, signatures=signatures)


@app.on_event("startup")
def _startup():
    configure_logging(SETTINGS.log_level, SETTINGS.log_json)
    logger.info("keystore runtime started (env=%s, layout=%s)", SETTINGS.env, SETTINGS.verify_layout)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": SETTINGS.env,
        "verify_layout": SETTINGS.verify_layout,
        "min_balance": SETTINGS.min_balance,
    }


@app.post("/batches", response_model=ReceiptModel)
def submit_batch(req: BatchRequest):
    if not req.instructions:
        raise HTTPException(400, "EMPTY_BATCH")
    receipt = RUNTIME.process(batch_from_request(req))
    if not receipt.committed():
        raise HTTPException(422, receipt.to_dict())
    return receipt.to_dict()


@app.post("/airdrop")
def airdrop(req: AirdropRequest):
    if SETTINGS.is_production():
        raise HTTPException(403, "AIRDROP_DISABLED")
    address = parse_hex(req.address, "address")
    RUNTIME.airdrop(address, req.amount)
    return {"address": req.address, "balance": RUNTIME.balance_of(address)}


@app.get("/balances/{address}")
def balance(address: str):
    return {"address": address, "balance": RUNTIME.balance_of(parse_hex(address, "address"))}


@app.get("/identities/{address}")
def get_identity(address: str):
    identity = RUNTIME.ledger.find_identity(parse_hex(address, "address"))
    if identity is None:
        raise HTTPException(404, "UNKNOWN_ACCOUNT")
    body = identity.to_dict()
    body["vault_balance"] = RUNTIME.balance_of(identity.vault)
    return body


@app.get("/identities/{address}/credentials")
def get_credentials(address: str) -> List[dict]:
    raw = parse_hex(address, "address")
    if RUNTIME.ledger.find_identity(raw) is None:
        raise HTTPException(404, "UNKNOWN_ACCOUNT")
    return [c.to_dict() for c in RUNTIME.ledger.credentials_for(raw)]


@app.get("/history")
def history(identity: Optional[str] = None, status: Optional[str] = None):
    status_filter = None
    if status is not None:
        try:
            status_filter = BatchStatus(status.upper())
        except ValueError:
            raise HTTPException(400, "INVALID_STATUS")
    identity_filter = parse_hex(identity, "identity") if identity is not None else None
    return [r.to_dict() for r in RUNTIME.journal.query(identity_filter, status_filter)]
