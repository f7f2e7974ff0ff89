"""Lower-trust fallback evidence: a curated skill summary file with proof links.

Used when the analytical store has no project mapping for a detected skill
or cannot be reached. Answers built from it always carry a caveat.
"""

import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from portfolio_agent.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FallbackSkill:
    skill: str
    aliases: list[str] = field(default_factory=list)
    confidence: str = "strong"
    summary: str | None = None
    proof: list[dict[str, str]] = field(default_factory=list)

    def names(self) -> list[str]:
        return [self.skill, *self.aliases]


@dataclass
class FallbackEvidence:
    skills: list[FallbackSkill] = field(default_factory=list)

    def find(self, name: str) -> FallbackSkill | None:
        """Exact (case-insensitive) lookup by skill name or alias."""
        target = name.lower()
        for entry in self.skills:
            if any(n.lower() == target for n in entry.names()):
                return entry
        return None

    def match_question(self, question: str) -> FallbackSkill | None:
        """Longest skill name or alias contained in the question, names before aliases."""
        lower = question.lower()
        best: tuple[int, int, FallbackSkill] | None = None
        for entry in self.skills:
            for rank, names in ((1, [entry.skill]), (0, entry.aliases)):
                for n in names:
                    if n and n.lower() in lower:
                        key = (rank, len(n))
                        if best is None or key > best[:2]:
                            best = (rank, len(n), entry)
        return best[2] if best else None


def parse_fallback_evidence(payload: dict) -> FallbackEvidence:
    skills = []
    for raw in payload.get("skills", []) or []:
        if not isinstance(raw, dict) or not raw.get("skill"):
            continue
        # Weaker claims than the store allows are never used as evidence
        if raw.get("confidence", "strong") not in ("expert", "strong"):
            continue
        proof = [
            {"title": p.get("title") or "Portfolio Evidence", "url": p["url"]}
            for p in raw.get("proof", []) or []
            if isinstance(p, dict) and p.get("url")
        ]
        skills.append(
            FallbackSkill(
                skill=raw["skill"],
                aliases=[a for a in raw.get("aliases", []) or [] if isinstance(a, str)],
                confidence=raw.get("confidence", "strong"),
                summary=raw.get("summary"),
                proof=proof,
            )
        )
    return FallbackEvidence(skills=skills)


@lru_cache(maxsize=4)
def load_fallback_evidence(path: Path) -> FallbackEvidence:
    """
    Load and cache the fallback evidence file.

    A missing or unreadable file yields an empty evidence set; the caller
    then answers "cannot confirm" instead of failing.

    Args:
        path: JSON file path

    Returns:
        FallbackEvidence
    """
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Fallback evidence unavailable at {path}: {e}")
        return FallbackEvidence()
    evidence = parse_fallback_evidence(payload)
    logger.info(f"Loaded {len(evidence.skills)} fallback skills from {path}")
    return evidence
