# routes_auth.py
# FastAPI routes for wallet-based login:
# 1) POST /auth/nonce  -> issue short-lived challenge and save to DB
# 2) POST /auth/verify -> verify signature, return JWT

import binascii
import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from substrateinterface import Keypair, KeypairType
from substrateinterface.utils.ss58 import ss58_decode

from .Database.db import get_db
from .auth_dep import create_access_token
from .boost.clock import as_utc
from .models import LoginNonces
from .services.payment import normalize_address

log = logging.getLogger("boost")

router = APIRouter(prefix="/auth", tags=["auth"])

LOGIN_PREFIX = "Boost login challenge: "
NONCE_TTL = timedelta(minutes=5)


def verify_wallet_signature(address: str, signed_message: str, signature_hex: str) -> bool:
    """
    Verify that 'signature_hex' is a valid signature by 'address' over 'signed_message'.
    Tries SR25519 first (most wallet extensions), then ED25519, then ECDSA.
    """
    if signature_hex.startswith("0x"):
        signature_hex = signature_hex[2:]
    try:
        sig_bytes = binascii.unhexlify(signature_hex)
    except binascii.Error:
        return False

    msg_bytes = signed_message.encode("utf-8")

    try:
        pubkey = bytes.fromhex(ss58_decode(address))
    except Exception:
        return False

    for kptype in (KeypairType.SR25519, KeypairType.ED25519, KeypairType.ECDSA):
        try:
            kp = Keypair(public_key=pubkey, ss58_address=address, crypto_type=kptype)
            if kp.verify(msg_bytes, sig_bytes):
                return True
        except Exception:
            continue
    return False


def _canonical(address_raw: str) -> str:
    if not address_raw:
        raise HTTPException(status_code=400, detail="wallet_address is required")
    try:
        return normalize_address(address_raw)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid SS58 address")


# ----------------------------
# 1) Issue login challenge
# ----------------------------
@router.post("/nonce")
def issue_nonce(payload: dict, db: Session = Depends(get_db)):
    address = _canonical((payload.get("wallet_address") or "").strip())

    nonce = secrets.token_hex(16)
    expires_at = datetime.now(timezone.utc) + NONCE_TTL

    row = db.get(LoginNonces, address)
    if row is None:
        row = LoginNonces(address=address, nonce=nonce, expires_at=expires_at)
        db.add(row)
    else:
        row.nonce = nonce
        row.expires_at = expires_at
    db.commit()

    return {
        "wallet_address": address,   # canonical
        "nonce": nonce,
        "message_to_sign": f"{LOGIN_PREFIX}{nonce}",
        "expires_at": expires_at.isoformat().replace("+00:00", "Z"),
    }


# ----------------------------
# 2) Verify signature
# ----------------------------
@router.post("/verify")
def verify_signature(payload: dict, db: Session = Depends(get_db)):
    address_raw = (payload.get("wallet_address") or "").strip()
    signature_hex = (payload.get("signature") or "").strip()
    signed_message = (payload.get("signed_message") or "").strip()

    if not address_raw or not signature_hex or not signed_message:
        raise HTTPException(status_code=400, detail="wallet_address, signature and signed_message are required")

    address = _canonical(address_raw)

    row = db.get(LoginNonces, address)
    if row is None:
        raise HTTPException(status_code=400, detail="No active login challenge for this address. Request a new nonce.")

    if datetime.now(timezone.utc) > as_utc(row.expires_at):
        db.delete(row)
        db.commit()
        raise HTTPException(status_code=400, detail="Login challenge expired. Request a new nonce.")

    # Must match the server-issued message exactly
    if signed_message != f"{LOGIN_PREFIX}{row.nonce}":
        raise HTTPException(status_code=400, detail="Signed message mismatch")

    if not verify_wallet_signature(address=address, signed_message=signed_message, signature_hex=signature_hex):
        raise HTTPException(status_code=401, detail="Signature verification failed")

    # Single use
    db.delete(row)
    db.commit()

    log.info("wallet login ok for %s", address)
    return {
        "wallet_address": address,
        "access_token": create_access_token(subject=address),
        "token_type": "bearer",
    }
