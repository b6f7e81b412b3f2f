from __future__ import annotations

import random

CREDENTIAL_PARAM = "key"
CREDENTIAL_SEPARATOR = ","


def split_credentials(raw: str) -> list[str]:
    """Split a comma-separated credential value, keeping duplicates in order."""
    return [item.strip() for item in raw.split(CREDENTIAL_SEPARATOR) if item.strip()]


def select_credential(raw: str | None, rng: random.Random | None = None) -> str | None:
    """Pick one credential per request when several are supplied.

    Values without a separator pass through untouched, as does a value that is
    nothing but separators and whitespace. Duplicated tokens are kept, so a key
    listed twice is picked twice as often.
    """
    if not raw or CREDENTIAL_SEPARATOR not in raw:
        return raw
    candidates = split_credentials(raw)
    if not candidates:
        return raw
    chooser = rng if rng is not None else random
    return chooser.choice(candidates)
