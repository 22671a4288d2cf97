from __future__ import annotations

import re

BOX_CODE_RE = re.compile(r"^B(\d+)-(\d+)$")


def format_box_code(batch_number: int, sequence_number: int) -> str:
    return f"B{int(batch_number)}-{int(sequence_number)}"


def normalize_box_code(raw) -> str:
    return str(raw or "").strip().upper()


def parse_box_code(raw) -> tuple[int, int] | None:
    """Return (batch_number, stop_sequence) or None when the code is malformed."""
    m = BOX_CODE_RE.match(normalize_box_code(raw))
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))
