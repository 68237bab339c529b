"""
Dual-registration fraud heuristics.

An individual can create a worker identity and then an organization
identity to issue credentials to themselves. When an organization signs
up, its name and email are compared against recently created workers.

The assessment is a signal, not a verdict: every heuristic is evaluated
and all reasons are reported. Whether a suspicious signup is blocked is
the caller's policy decision.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from .ports import WorkerIdentity
from .similarity import similarity

NAME_SIMILARITY_THRESHOLD = 0.7
LOCAL_PART_SIMILARITY_THRESHOLD = 0.8

PERSONAL_INDICATORS = frozenset({"personal", "self", "freelance", "individual", "myself", "own"})

# Generic words that say nothing about who is behind an organization.
# Stripped before comparing, so "Alice Smith Consulting" reads as "Alice Smith".
BUSINESS_SUFFIXES = frozenset(
    {
        "agency",
        "co",
        "company",
        "consultancy",
        "consulting",
        "corp",
        "corporation",
        "enterprise",
        "enterprises",
        "group",
        "inc",
        "labs",
        "limited",
        "llc",
        "llp",
        "ltd",
        "private",
        "pvt",
        "services",
        "solutions",
        "studio",
        "technologies",
        "ventures",
    }
)

_WORD_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class FraudAssessment:
    suspicious: bool
    reasons: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def _core_name(name: str) -> str:
    return " ".join(w for w in _words(name) if w not in BUSINESS_SUFFIXES)


def _local_part(email: str) -> str:
    return email.split("@", 1)[0].lower()


def name_similarity(org_name: str, person_name: str) -> float:
    """Best of raw and suffix-stripped similarity between two names."""
    raw = similarity(" ".join(_words(org_name)), " ".join(_words(person_name)))
    core = _core_name(org_name)
    if not core:
        return raw
    return max(raw, similarity(core, " ".join(_words(person_name))))


@dataclass
class FraudDetector:
    """
    Screens organization signups against recent worker identities.

    The caller supplies a bounded window of recent workers; the detector
    never scans the full population itself.
    """

    temporal_window: timedelta = timedelta(hours=24)
    name_threshold: float = NAME_SIMILARITY_THRESHOLD
    local_part_threshold: float = LOCAL_PART_SIMILARITY_THRESHOLD
    clock: Callable[[], datetime] = _utcnow

    def assess(
        self,
        candidate_email: str,
        candidate_org_name: str,
        recent_workers: Iterable[WorkerIdentity],
        *,
        now: datetime | None = None,
    ) -> FraudAssessment:
        reasons: list[str] = []
        now = now or self.clock()
        candidate_local = _local_part(candidate_email)
        workers = list(recent_workers)

        for worker in workers:
            score = name_similarity(candidate_org_name, worker.full_name)
            if score > self.name_threshold:
                reasons.append(
                    f"Organization name '{candidate_org_name}' is similar to worker "
                    f"'{worker.full_name}' ({score:.2f})"
                )

            worker_local = _local_part(worker.email)
            local_score = similarity(candidate_local, worker_local)
            if local_score > self.local_part_threshold:
                reasons.append(
                    f"Email '{candidate_email}' is similar to worker email "
                    f"'{worker.email}' ({local_score:.2f})"
                )

        cutoff = now - self.temporal_window
        recent_count = sum(1 for w in workers if w.created_at >= cutoff)
        if recent_count:
            hours = int(self.temporal_window.total_seconds() // 3600)
            reasons.append(f"{recent_count} worker account(s) created in the last {hours} hours")

        flagged = sorted(PERSONAL_INDICATORS.intersection(_words(candidate_org_name)))
        if flagged:
            reasons.append(
                f"Organization name '{candidate_org_name}' contains personal indicator(s): "
                + ", ".join(flagged)
            )

        return FraudAssessment(suspicious=bool(reasons), reasons=reasons)
