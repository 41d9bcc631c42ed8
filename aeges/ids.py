"""Identifier generation: ``<PREFIX>_<epoch-ms>_<random-suffix>``."""

import secrets
import string
import time

ANALYSIS_PREFIX = "AEGES"
CONTAINMENT_PREFIX = "CONT"
RECOVERY_PREFIX = "REC"
EVENT_PREFIX = "evt"

_ALPHABET = string.digits + string.ascii_lowercase


def generate_id(prefix: str, suffix_length: int = 9) -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(suffix_length))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"
