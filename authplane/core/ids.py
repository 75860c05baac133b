from __future__ import annotations

from uuid import uuid4


def generate_id(prefix: str) -> str:
    # Prefix ids with the entity kind so operators can tell rows apart in logs.
    return f"{prefix}_{uuid4().hex}"
