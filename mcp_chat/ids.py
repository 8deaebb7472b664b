"""Identifier helpers."""

import secrets

_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"


def generate_id(size: int = 21) -> str:
    """Return a url-safe random id (nanoid alphabet)."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(size))


def message_id() -> str:
    """Return an id for a model-produced message."""
    return f"msg-{generate_id(24)}"
