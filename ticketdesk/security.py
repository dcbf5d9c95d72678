from datetime import datetime, timedelta, timezone

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

QR_CLAIMS = ["ticketId", "eventId", "userId"]


def sign_qr_token(payload: dict, secret: str) -> str:
    # QR tokens do not expire: a ticket stays valid until it is used
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_qr_token(qr_token: str, secret: str) -> dict:
    try:
        payload = jwt.decode(qr_token, secret, algorithms=["HS256"])
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    for k in QR_CLAIMS:
        if k not in payload:
            raise ValueError("INVALID_TOKEN")

    return payload


def mint_principal_token(sub: str, role: str, secret: str, ttl_minutes: int = 60, **claims) -> str:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    payload = {"sub": sub, "role": role, "exp": exp, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_principal_token(token: str, secret: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except ExpiredSignatureError:
        raise ValueError("EXPIRED")
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    now = datetime.now(timezone.utc).timestamp()
    exp = payload.get("exp")
    if exp is None or now > float(exp):
        raise ValueError("EXPIRED")

    for k in ["sub", "role"]:
        if k not in payload:
            raise ValueError("INVALID_TOKEN")

    return payload
