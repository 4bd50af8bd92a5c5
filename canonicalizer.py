"""Deterministic canonicalization of BOM component descriptions (no I/O).

The chain runs in a fixed order because later stages assume the earlier ones
already normalized the text:

  1. strip the part number
  2. noise words and vocabulary (CHIP, PKG, CER -> CRM)
  3. signs and ranges (±5% -> 5%, ±1-±2 -> 1-2, -40 -> 40)
  4. resistance (OHM -> R, KOHM -> K, MOHM -> M)
  5. capacitance (UF -> MF, NF -> MF or PF, PF uppercased)
  6. mounting type (SMD -> SMT, otherwise infer SMT/TH from the package)
  7. IC packages ("8-PIN SOIC" -> "SOIC-8")
  8. tightening ("50 V" -> "50V")

"MF" is this catalog's spelling of microfarad, not megafarad. Downstream
catalog matching depends on it.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Callable, NamedTuple

from models import NO_PART_NUMBER_MARKER

_NUM = r"(\d+(?:\.\d+)?)"
_OHM = "[ΩΩ]"  # Greek capital omega and the ohm sign

_WHITESPACE_RE = re.compile(r"\s+")


class Rule(NamedTuple):
    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]


def _rule(
    name: str,
    pattern: str,
    replacement: str | Callable[[re.Match[str]], str],
    flags: int = re.IGNORECASE,
) -> Rule:
    return Rule(name, re.compile(pattern, flags), replacement)


def format_number(value: float) -> str:
    """Render a number without trailing zeros or a trailing decimal point (0.150 -> 0.15, 1.0 -> 1)."""
    # 12 significant digits: 4.7 * 1000 renders as 4700 and 1e-7 as 0.0000001.
    text = format(Decimal(f"{value:.12g}").normalize(), "f")
    return "0" if text in ("-0", "") else text


def _milliohm(match: re.Match[str]) -> str:
    return f"{format_number(float(match[1]) / 1000)}R"


def _microfarad(match: re.Match[str]) -> str:
    return f"{format_number(float(match[1]))}MF"


def _nanofarad(match: re.Match[str]) -> str:
    value = float(match[1])
    if value >= 100:
        return f"{format_number(value / 1000)}MF"
    return f"{format_number(value * 1000)}PF"


def _picofarad(match: re.Match[str]) -> str:
    return f"{format_number(float(match[1]))}PF"


# ---------------------------------------------------------------------------
# Rule tables, one per category, in priority order
# ---------------------------------------------------------------------------

NOISE_RULES: tuple[Rule, ...] = (
    _rule("ceramic", r"\bCER(?:AMIC)?\b", "CRM"),
    _rule("filler", r"\b(?:CHIP|PKG|PACKAGE)\b", " "),
)

SIGN_RULES: tuple[Rule, ...] = (
    _rule("ascii_plus_minus", r"\+\s*/\s*-", "±", 0),
    _rule("plus_minus_range", rf"±\s*{_NUM}\s*-\s*±\s*{_NUM}", r"\1-\2", 0),
    _rule("plus_minus_unit", rf"±\s*{_NUM}(?=\s*(?:%|[A-Za-zµμΩΩ]))", r"\1", 0),
    _rule("plus_minus_bare", r"±\s*(?=\d)", "", 0),
    _rule("stray_sign", r"(?<![\w.%)])[+\-](?=\d)", "", 0),
)

# Mega before kilo before milli before plain ohms, so "MOHM" never becomes "MR".
RESISTANCE_RULES: tuple[Rule, ...] = (
    _rule("mega_ohm", rf"{_NUM}\s*(?:MEG\s?OHMS?|M\s?OHMS?)\b", r"\1M"),
    _rule("mega_ohm_symbol", rf"{_NUM}\s*M{_OHM}", r"\1M", 0),
    _rule("kilo_ohm", rf"{_NUM}\s*K\s?OHMS?\b", r"\1K"),
    _rule("kilo_ohm_symbol", rf"{_NUM}\s*[kK]{_OHM}", r"\1K", 0),
    _rule("milli_ohm", rf"{_NUM}\s*MILLI\s?OHMS?\b", _milliohm),
    _rule("milli_ohm_symbol", rf"{_NUM}\s*m{_OHM}", _milliohm, 0),
    _rule("ohm", rf"{_NUM}\s*OHMS?\b", r"\1R"),
    _rule("ohm_symbol", rf"{_NUM}\s*{_OHM}", r"\1R", 0),
)

CAPACITANCE_RULES: tuple[Rule, ...] = (
    _rule("microfarad", rf"{_NUM}\s*[uμµ]F\b", _microfarad),
    _rule("nanofarad", rf"{_NUM}\s*NF\b", _nanofarad),
    _rule("picofarad", rf"{_NUM}\s*PF\b", _picofarad),
)

_IC_FAMILIES = (
    "CERDIP", "PDIP", "CDIP", "DIP",
    "TSSOP", "SSOP", "MSOP", "SOIC", "SOP",
    "QFN", "DFN", "LQFP", "TQFP", "QFP",
    "BGA", "LGA", "PLCC",
)
_FAMILY = "|".join(_IC_FAMILIES)


def _package_suffix(match: re.Match[str]) -> str:
    return f"{match[2].upper()}-{match[1]}"


PACKAGE_RULES: tuple[Rule, ...] = (
    _rule("pin_family", rf"\b(\d+)\s*-?\s*PINS?\s+({_FAMILY})\b", _package_suffix),
    _rule("count_family", rf"\b(\d+)-({_FAMILY})\b", _package_suffix),
)

_UNITS = (
    "VDC", "VAC", "V", "KW", "MW", "W", "MA", "UA", "A",
    "GHZ", "MHZ", "KHZ", "HZ", "DBM", "DB",
    "MF", "PF", "NH", "UH", "MH", "MM", "PPM",
    "R", "K", "M", "C", "P", "%",
)

TIGHTEN_RULES: tuple[Rule, ...] = (
    _rule("unit_spacing", rf"(\d)\s+({'|'.join(_UNITS)})(?![\w%])", r"\1\2"),
)

# ---------------------------------------------------------------------------
# Mounting type vocabulary
# ---------------------------------------------------------------------------

_SMD_RE = re.compile(r"\bSMD\b", re.IGNORECASE)
_MOUNTING_PRESENT_RE = re.compile(
    r"\b(?:SMT|THT|PTH|TH)\b|\bTHR(?:OUGH|U)[\s-]?HOLE\b", re.IGNORECASE
)
_TH_PACKAGE_RE = re.compile(r"\b(?:CER|[PC])?DIP(?:-?\d+)?\b|\bTO-?\d+\b", re.IGNORECASE)
_SMT_PACKAGE_RE = re.compile(
    r"\b(?:TSSOP|SSOP|MSOP|SOIC|SOP|QFN|DFN|LQFP|TQFP|QFP|BGA|LGA|PLCC|SOT|SOD|D2PAK|DPAK|MELF)(?:-?\d+)?\b"
    r"|\bSC-?\d+\b"
    r"|\bTO-?(?:252|263|277)\b"
    r"|\b(?:0201|0402|0603|0805|1008|1206|1210|1812|2010|2220|2512)\b",
    re.IGNORECASE,
)


def infer_mounting_type(text: str) -> str | None:
    """Classify a description as "SMT", "TH", or None when nothing says which."""
    has_smt = bool(_SMT_PACKAGE_RE.search(text))
    if _TH_PACKAGE_RE.search(text) and not has_smt:
        return "TH"
    if has_smt:
        return "SMT"
    return None


def canonicalize(description: str, part_number: str) -> str:
    """Rewrite a raw description into the canonical, vendor-neutral format.

    Pure and total: an empty description or the "no part number available"
    marker comes back untouched, anything else comes back normalized.
    """
    if not description or str(description).strip().lower() == NO_PART_NUMBER_MARKER:
        return description

    part_number = str(part_number or "").strip()
    text = _strip_part_number(_squash(str(description)), part_number)

    for rules in (NOISE_RULES, SIGN_RULES, RESISTANCE_RULES, CAPACITANCE_RULES):
        text = apply_rules(text, rules)
    text = _apply_mounting(text)
    text = apply_rules(text, PACKAGE_RULES)
    text = apply_rules(text, TIGHTEN_RULES)

    # Tightening can glue "1 K" into "1K"; the part number must still never appear.
    return _strip_part_number(text, part_number)


def apply_rules(text: str, rules: tuple[Rule, ...]) -> str:
    for rule in rules:
        text = rule.pattern.sub(rule.replacement, text)
    return _squash(text)


def _apply_mounting(text: str) -> str:
    text = _SMD_RE.sub("SMT", text)
    if _MOUNTING_PRESENT_RE.search(text):
        return text
    mounting = infer_mounting_type(text)
    return f"{text} {mounting}" if mounting else text


def _strip_part_number(text: str, part_number: str) -> str:
    if not part_number:
        return text
    pattern = re.compile(re.escape(part_number), re.IGNORECASE)
    while pattern.search(text):
        text = _squash(pattern.sub(" ", text))
    return text


def _squash(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()
