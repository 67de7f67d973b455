"""
label.py

UFS2 volume label helpers.

  - validate_label(): reject labels the builder would not accept.
  - make_default_label(): derive a label from the title ID and title name
    found in param.json when the user did not pass one.
"""

from __future__ import annotations

import re

from ufs2img.errors import LabelError

LABEL_MAX_LEN = 16

# Last 5 chars of the title ID (e.g. "12345" from "PPSA12345") ...
TITLE_ID_CHARS = 5
# ... followed by the first 11 chars of the title name.
TITLE_NAME_CHARS = 11

LABEL_RE = re.compile(r"[A-Za-z0-9._-]+")
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


def validate_label(label: str) -> None:
    if len(label) > LABEL_MAX_LEN:
        raise LabelError(
            f"UFS label can't exceed {LABEL_MAX_LEN} chars (provided: '{label}')"
        )
    if not LABEL_RE.fullmatch(label):
        raise LabelError(
            "UFS label can only contain letters, numbers, dots, underscores, "
            f"and hyphens (provided: '{label}')"
        )


def strip_non_alnum(text: str) -> str:
    """Drop everything except ASCII letters and digits."""
    return _NON_ALNUM_RE.sub("", text)


def make_default_label(title_id: str, title_name: str) -> str:
    """
    Build the default label: last 5 alphanumeric chars of the title ID
    followed by the first 11 alphanumeric chars of the title name.

    Example:
        ("CUSA12345", "My Game!") -> "12345MyGame"

    The result may be empty when neither input has any alphanumeric
    character; callers then build the image without a label.
    """
    id_clean = strip_non_alnum(title_id)
    name_clean = strip_non_alnum(title_name)
    return id_clean[-TITLE_ID_CHARS:] + name_clean[:TITLE_NAME_CHARS]
