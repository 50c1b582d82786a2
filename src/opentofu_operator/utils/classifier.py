"""Interpretation of OpenTofu CLI output captured from Job pods.

All functions here are pure and operate on the raw text of a pod log
(``-no-color`` output, stdout and stderr interleaved).
"""

from __future__ import annotations

import re

from ..constants import UNKNOWN_ERROR

# OpenTofu prints a one-line summary of each diagnostic prefixed with "Error: "
_ERROR_SUMMARY = re.compile(r"Error: (.+)")

_PLAN_SUMMARY = re.compile(r"^Plan: (\d+) to add, (\d+) to change, (\d+) to destroy\.", re.M)
_NO_CHANGES = re.compile(r"^No changes\.", re.M)
_OUTPUT_CHANGES = re.compile(r"^Changes to Outputs:", re.M)

_OUTPUTS_HEADER = "Outputs:"
_OUTPUT_ENTRY = re.compile(r"^([A-Za-z_][A-Za-z0-9_-]*) = (.*)$")
_SENSITIVE_VALUES = ("<sensitive>", "(sensitive value)")


def classify_error(text: str) -> str:
    """Reduce verbose CLI output to a single lower-cased error line.

    The first ``Error: <summary>`` wins; failing that, the first non-empty
    line; failing that, ``"unknown error"``.
    """
    match = _ERROR_SUMMARY.search(text or "")
    if match and match.group(1).strip():
        return match.group(1).strip().lower()

    for line in (text or "").splitlines():
        if line.strip():
            return line.strip().lower()

    return UNKNOWN_ERROR


def classify_plan_result(text: str) -> bool:
    """Return True when a ``tofu plan`` log reports that nothing needs to change.

    A ``Plan:`` summary line decides on its own: zero to add, change and
    destroy means no drift. Without one, ``No changes.`` means no drift unless
    output values are about to change. Anything else counts as drift.
    """
    summary = _PLAN_SUMMARY.search(text or "")
    if summary:
        return all(int(count) == 0 for count in summary.groups())

    if _OUTPUT_CHANGES.search(text or ""):
        return False

    return bool(_NO_CHANGES.search(text or ""))


def parse_outputs(text: str) -> dict[str, str]:
    """Extract root module outputs from a ``tofu apply`` log.

    Sensitive outputs are skipped. String values lose their quotes; lists,
    maps and other multi-line values are kept verbatim.
    """
    lines = (text or "").splitlines()
    try:
        start = len(lines) - 1 - lines[::-1].index(_OUTPUTS_HEADER)
    except ValueError:
        return {}

    raw: dict[str, list[str]] = {}
    current: str | None = None
    for line in lines[start + 1 :]:
        entry = _OUTPUT_ENTRY.match(line)
        if entry:
            current = entry.group(1)
            raw[current] = [entry.group(2)]
        elif current is not None and line.strip():
            raw[current].append(line)

    outputs: dict[str, str] = {}
    for name, value_lines in raw.items():
        value = "\n".join(value_lines).strip()
        if value in _SENSITIVE_VALUES:
            continue
        if len(value_lines) == 1 and len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1].replace('\\"', '"')
        outputs[name] = value
    return outputs
