"""Instant preview summary computed from intake answers.

Pure and cheap: no backend call. The full memo is produced by the
generation backend after payment.
"""

from typing import Any

from app.core.schemas_intake import Discovery, DiscoveryType

# Answers that signal elevated execution risk
_RISK_FLAGS = {
    "q6": "liquidity_forcing_event",
    "q8": "advisor_coordination",
    "q9": "behavioral_pattern",
}

_JURISDICTION_QUESTIONS = ("q3", "q4")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return " ".join(_as_text(v) for v in value.values()).strip()
    if isinstance(value, (list, tuple)):
        return " ".join(_as_text(v) for v in value).strip()
    return str(value)


def _jurisdictions(answers: dict[str, Any]) -> list[str]:
    found: list[str] = []
    for qid in _JURISDICTION_QUESTIONS:
        value = answers.get(qid)
        if isinstance(value, dict):
            candidates = [value.get("from"), value.get("to"), *(value.get("jurisdictions") or [])]
        elif isinstance(value, (list, tuple)):
            candidates = list(value)
        else:
            candidates = [part for part in _as_text(value).replace("→", ",").split(",")]
        for candidate in candidates:
            name = _as_text(candidate)
            if name and name not in found:
                found.append(name)
    return found


def build_instant_preview(
    answers: dict[str, Any],
    discoveries: list[Discovery],
    required_questions: list[str],
) -> dict[str, Any]:
    """Summarize answers and discoveries into the pre-payment preview."""
    answered_required = [q for q in required_questions if _as_text(answers.get(q))]
    counts = {t: 0 for t in DiscoveryType}
    for discovery in discoveries:
        counts[discovery.type] += 1

    risk_flags = [flag for qid, flag in _RISK_FLAGS.items() if _as_text(answers.get(qid))]

    completeness = (
        round(len(answered_required) / len(required_questions), 2) if required_questions else 1.0
    )

    return {
        "questions_answered": len(answers),
        "required_answered": len(answered_required),
        "completeness": completeness,
        "jurisdictions": _jurisdictions(answers),
        "risk_flags": risk_flags,
        "opportunities_found": counts[DiscoveryType.OPPORTUNITY],
        "mistakes_identified": counts[DiscoveryType.MISTAKE],
        "intelligence_matches": counts[DiscoveryType.INTELLIGENCE_MATCH],
        "headline": _headline(len(risk_flags), counts[DiscoveryType.MISTAKE]),
    }


def _headline(risk_flag_count: int, mistake_count: int) -> str:
    exposures = risk_flag_count + mistake_count
    if exposures == 0:
        return "No structural exposures detected in the preview"
    if exposures == 1:
        return "1 exposure detected; the full memo details remediation"
    return f"{exposures} exposures detected; the full memo details remediation"
