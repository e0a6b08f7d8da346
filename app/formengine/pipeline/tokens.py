from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

DEFAULT_COMPANY_NAME = "Our Dealership"

RE_TOKEN = re.compile(r"\{(?:dealer\.)?([A-Za-z_][A-Za-z0-9_]*)\}")
RE_BULLET_SPLIT = re.compile(r"(?:^|\n)(?:•|●|-|\d+\.)\s*")
RE_BULLET_PREFIX = re.compile(r"^[-•●]\s*")

# Company tokens fall back to the plain dealer attribute of the same meaning.
COMPANY_FALLBACKS = {
    "companyName": "name",
    "companyPhone": "phone",
    "companyAddress": "address",
    "companyEmail": "email",
}
# Only these may appear without the "dealer." prefix.
LEGACY_BARE_TOKENS = set(COMPANY_FALLBACKS)


def _dealer_value(dealer: Dict[str, Any], key: str) -> str:
    value = dealer.get(key)
    if not value and key in COMPANY_FALLBACKS:
        value = dealer.get(COMPANY_FALLBACKS[key])
    if not value and key == "companyName":
        value = DEFAULT_COMPANY_NAME
    return "" if value is None else str(value)


def substitute_tokens(text: Optional[str], dealer: Optional[Dict[str, Any]]) -> Optional[str]:
    """Replace ``{dealer.X}`` (and legacy ``{companyName}``-style) placeholders with tenant data."""
    if not text or dealer is None:
        return text

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        prefixed = match.group(0).startswith("{dealer.")
        if not prefixed and key not in LEGACY_BARE_TOKENS:
            return match.group(0)
        return _dealer_value(dealer, key)

    return RE_TOKEN.sub(_replace, text)


def format_terms_as_list(text: Optional[str], dealer: Optional[Dict[str, Any]]) -> List[str]:
    """Split terms text into display lines after token substitution."""
    if not text:
        return []
    processed = substitute_tokens(text, dealer) or ""
    lines = [line.strip() for line in RE_BULLET_SPLIT.split(processed)]
    lines = [line for line in lines if line]
    if len(lines) > 1:
        return lines
    newline_lines = [line.strip() for line in processed.split("\n") if line.strip()]
    if len(newline_lines) > 1:
        return [RE_BULLET_PREFIX.sub("", line) for line in newline_lines]
    return [processed.strip()] if processed.strip() else []
