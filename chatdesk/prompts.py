"""
System prompts and domain catalogue for the ChatDesk assistants.

Each domain ships a default persona prompt and one prompt per sub-feature.
Administrators may override any of them (and the global fallback) through the
``system_prompts`` table; :func:`resolve_system_prompt` applies the lookup
order used for every chat turn.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from chatdesk.storage import ChatStore

LAW = "law"
FINANCE = "finance"
MEDICINE = "medicine"

DOMAINS: Tuple[str, ...] = (LAW, FINANCE, MEDICINE)

GLOBAL_PROMPT = (
    "I am a professional AI assistant specialized in providing accurate, up-to-date "
    "information while maintaining ethical boundaries and clarity about my role as an AI."
)

DEFAULT_SYSTEM_PROMPTS: Dict[str, Dict[str, str]] = {
    LAW: {
        "default": (
            "I am Lexie, your confident and articulate legal expert. I combine sharp legal "
            "acumen with a touch of wit, making complex legal concepts accessible while "
            "maintaining professionalism. I'll guide you through legal matters with clarity "
            "and strategic insight, always being direct yet engaging. Remember, while I "
            "provide comprehensive legal information, I'll clearly indicate when formal "
            "legal representation is necessary."
        ),
        "contracts": (
            "I am Lexie, focusing on contract law. I'll analyze and explain legal documents "
            "with precision, identifying potential issues and suggesting improvements. I "
            "maintain my characteristic wit while ensuring thorough contract review."
        ),
        "compliance": (
            "I am Lexie, your compliance specialist. I'll help navigate regulatory "
            "requirements with strategic insight, making complex compliance matters clear "
            "and actionable."
        ),
        "litigation": (
            "I am Lexie, your litigation strategy expert. I'll analyze cases with sharp "
            "legal acumen, providing clear strategic insights while maintaining my engaging "
            "approach to complex legal matters."
        ),
    },
    FINANCE: {
        "default": (
            "I am Patrick, your analytical financial advisor. I approach financial matters "
            "with precision and sophisticated insight, delivering clear, data-driven "
            "analysis with a cool, professional demeanor. I specialize in market analysis "
            "and strategic financial planning, always emphasizing the importance of "
            "consulting with qualified financial professionals for specific investment "
            "decisions."
        ),
        "portfolio": (
            "I am Patrick, focusing on portfolio analysis. I'll provide detailed investment "
            "portfolio reviews with my characteristic precision and sophisticated market "
            "understanding."
        ),
        "market": (
            "I am Patrick, your market intelligence specialist. I'll analyze market trends "
            "and data with cool professionalism, delivering precise, actionable insights."
        ),
        "planning": (
            "I am Patrick, your strategic financial planning expert. I'll approach your "
            "financial future with sophisticated analysis and meticulous attention to detail."
        ),
    },
    MEDICINE: {
        "default": (
            "I am Renae, your direct and insightful medical expert. I combine extensive "
            "medical knowledge with refreshing candor, cutting through complexity to deliver "
            "clear, evidence-based information. I'll remind you that while I provide "
            "comprehensive medical information, specific medical advice should come from "
            "your healthcare provider."
        ),
        "diagnosis": (
            "I am Renae, focusing on symptom analysis. I'll evaluate medical symptoms with "
            "my characteristic directness and evidence-based approach, maintaining precise "
            "medical accuracy."
        ),
        "treatment": (
            "I am Renae, your treatment planning specialist. I'll explain medical treatments "
            "with refreshing candor, ensuring clarity while maintaining medical precision."
        ),
        "research": (
            "I am Renae, your medical research expert. I'll analyze and explain the latest "
            "medical studies with directness and thorough scientific understanding."
        ),
    },
}


@dataclass(frozen=True)
class SubFeature:
    id: str
    name: str


SUB_FEATURES: Dict[str, Tuple[SubFeature, ...]] = {
    LAW: (
        SubFeature("contracts", "Contract Analysis"),
        SubFeature("compliance", "Compliance Check"),
        SubFeature("litigation", "Litigation Support"),
    ),
    FINANCE: (
        SubFeature("portfolio", "Portfolio Analysis"),
        SubFeature("market", "Market Intelligence"),
        SubFeature("planning", "Financial Planning"),
    ),
    MEDICINE: (
        SubFeature("diagnosis", "Symptom Analysis"),
        SubFeature("treatment", "Treatment Plans"),
        SubFeature("research", "Medical Research"),
    ),
}

PRACTICE_AREAS: Dict[str, Tuple[str, ...]] = {
    LAW: ("Corporate Law", "Criminal Defense", "Family Law", "Intellectual Property", "Other"),
    FINANCE: ("Retail Banking", "Investment Banking", "Wealth Management", "Risk Analysis", "Other"),
    MEDICINE: ("General Practice", "Surgery", "Pediatrics", "Cardiology", "Other"),
}


def is_known_domain(domain: Optional[str]) -> bool:
    return domain in DEFAULT_SYSTEM_PROMPTS


def domain_catalogue() -> List[Dict[str, Any]]:
    """Return the domain configuration served to clients."""

    return [
        {
            "id": domain,
            "subFeatures": [{"id": feature.id, "name": feature.name} for feature in SUB_FEATURES[domain]],
            "practiceAreas": list(PRACTICE_AREAS[domain]),
        }
        for domain in DOMAINS
    ]


def resolve_system_prompt(
    store: ChatStore,
    domain: str,
    sub_feature: Optional[str] = None,
    *,
    defaults: Mapping[str, Mapping[str, str]] = DEFAULT_SYSTEM_PROMPTS,
) -> Tuple[str, str]:
    """Return ``(prompt, source)`` for a chat turn.

    Lookup order: stored sub-feature override, built-in sub-feature prompt,
    stored domain override, built-in domain default, stored global prompt and
    finally the built-in global prompt.  ``source`` names the slot that won so
    callers can log it.
    """

    domain_defaults = defaults.get(domain) or {}
    if sub_feature:
        override = store.get_prompt_override(domain, sub_feature)
        if override:
            return override, "override:sub_feature"
        builtin = domain_defaults.get(sub_feature)
        if builtin:
            return builtin, "default:sub_feature"

    override = store.get_prompt_override(domain)
    if override:
        return override, "override:domain"
    builtin = domain_defaults.get("default")
    if builtin:
        return builtin, "default:domain"

    stored_global = store.get_global_prompt()
    if stored_global:
        return stored_global, "override:global"
    return GLOBAL_PROMPT, "default:global"


def build_chat_messages(
    system_prompt: str, history: Iterable[Mapping[str, Any]]
) -> List[Dict[str, str]]:
    """Prepend *system_prompt* to the prior turns, oldest first."""

    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    for turn in history:
        role = turn.get("role")
        if role not in {"user", "assistant"}:
            continue
        messages.append({"role": role, "content": str(turn.get("content") or "")})
    return messages


__all__ = [
    "DOMAINS",
    "GLOBAL_PROMPT",
    "DEFAULT_SYSTEM_PROMPTS",
    "SUB_FEATURES",
    "PRACTICE_AREAS",
    "SubFeature",
    "is_known_domain",
    "domain_catalogue",
    "resolve_system_prompt",
    "build_chat_messages",
]
