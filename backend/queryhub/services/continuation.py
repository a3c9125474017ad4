import time
from dataclasses import dataclass
from typing import Optional

import jwt

from ..core.errors import InvalidContinuationError

ALGORITHM = "HS256"


@dataclass(frozen=True)
class ContinuationToken:
    """Everything the dispatcher needs to pick a running query back up."""

    run_id: str
    data_source: str
    issued_at: float


def encode_token(token: ContinuationToken, secret: str, ttl_seconds: float) -> str:
    payload = {
        "run_id": token.run_id,
        "data_source": token.data_source,
        "iat": token.issued_at,
        "exp": token.issued_at + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(value: str, secret: str, now: Optional[float] = None) -> ContinuationToken:
    """
    Verify signature and expiry, then rebuild the token.
    Raises InvalidContinuationError for anything that doesn't check out.

    `now` pins the clock the expiry is checked against.
    """
    # PyJWT always compares against the wall clock; leeway shifts it to `now`
    leeway = 0.0 if now is None else time.time() - now
    try:
        payload = jwt.decode(
            value,
            secret,
            algorithms=[ALGORITHM],
            leeway=leeway,
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise InvalidContinuationError("Query expired, please run it again") from e
    except jwt.InvalidTokenError as e:
        raise InvalidContinuationError("Invalid continuation token") from e

    try:
        return ContinuationToken(
            run_id=str(payload["run_id"]),
            data_source=str(payload["data_source"]),
            issued_at=float(payload["iat"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidContinuationError("Invalid continuation token") from e
