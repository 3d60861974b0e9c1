"""Group invite codes."""

from __future__ import annotations

import re
import secrets

# Excludes look-alikes such as O/0 and I/1.
INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 6

_INVITE_CODE_RE = re.compile(rf"^[{INVITE_CODE_ALPHABET}]{{{INVITE_CODE_LENGTH}}}$")


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def normalize_invite_code(code: str) -> str:
    return code.strip().upper()


def is_valid_invite_code(code: str) -> bool:
    return bool(_INVITE_CODE_RE.match(normalize_invite_code(code)))
