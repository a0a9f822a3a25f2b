"""Session identifiers.

Ids are opaque and only need to be unique; they are not a security boundary,
so a time prefix plus a short random suffix is enough.
"""
from __future__ import annotations

import random
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase
_SUFFIX_LEN = 9


def generate_session_id() -> str:
    """Return a new id like ``session_1718000000000_k3j9x0a2b``."""
    millis = int(time.time() * 1000)
    suffix = "".join(random.choices(_ALPHABET, k=_SUFFIX_LEN))
    return f"session_{millis}_{suffix}"
