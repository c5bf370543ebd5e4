"""
Commit Linker

Scores how likely a commit carries the work of an Interaction:

    score = w_t * time_proximity + w_f * file_overlap + w_m * message_similarity

with defaults 0.3 / 0.5 / 0.2. Weights are normalized by their sum so the
score stays in [0, 1] for any configuration. A score at or above the accept
threshold (0.7) links automatically; anything lower leaves the Interaction
an orphan whose candidates are kept for later re-scoring or manual review.

The reactive path (one Interaction, recent commits) and the retroactive
import (all Interactions, historical commits) share ``link``.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from ..common.config import LinkerConfig
from ..common.schemas.events import CommitInfo
from ..common.schemas.interaction import CommitLink, Interaction, LinkSignals
from ..common.text import jaccard, normalize_tokens

logger = logging.getLogger("ctxd.pipeline.linker")


class CommitLinker:
    def __init__(
        self,
        time_weight: float = 0.3,
        file_weight: float = 0.5,
        message_weight: float = 0.2,
        accept_threshold: float = 0.7,
        horizon_seconds: float = 3600.0,
    ):
        weights = (time_weight, file_weight, message_weight)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError(f"Linker weights must be non-negative with a positive sum: {weights}")
        if horizon_seconds <= 0:
            raise ValueError("horizon_seconds must be positive")
        total = sum(weights)
        self.time_weight = time_weight / total
        self.file_weight = file_weight / total
        self.message_weight = message_weight / total
        self.accept_threshold = accept_threshold
        self.horizon_seconds = horizon_seconds

    @classmethod
    def from_config(cls, config: LinkerConfig) -> "CommitLinker":
        return cls(
            time_weight=config.time_weight,
            file_weight=config.file_weight,
            message_weight=config.message_weight,
            accept_threshold=config.accept_threshold,
            horizon_seconds=config.horizon_seconds,
        )

    def can_accept(self, interaction_at: datetime, commit_at: datetime) -> bool:
        """Whether any commit at ``commit_at`` could reach the threshold.

        Beyond the horizon the time signal is zero, so only file and message
        agreement remain.
        """
        if abs((commit_at - interaction_at).total_seconds()) < self.horizon_seconds:
            return True
        return round(self.file_weight + self.message_weight, 6) >= self.accept_threshold

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def time_proximity(self, interaction: Interaction, commit: CommitInfo) -> float:
        """1.0 at zero distance, decaying linearly to 0.0 at the horizon"""
        distance = abs((commit.timestamp - interaction.timestamp).total_seconds())
        return max(0.0, 1.0 - distance / self.horizon_seconds)

    @staticmethod
    def file_overlap(interaction: Interaction, commit: CommitInfo) -> float:
        return jaccard(interaction.files, commit.files)

    @staticmethod
    def message_similarity(interaction: Interaction, commit: CommitInfo) -> float:
        if interaction.intent is None or not interaction.intent.solution:
            return 0.0
        return jaccard(normalize_tokens(interaction.intent.solution), normalize_tokens(commit.message))

    def signals(self, interaction: Interaction, commit: CommitInfo) -> LinkSignals:
        return LinkSignals(
            time_proximity=self.time_proximity(interaction, commit),
            file_overlap=self.file_overlap(interaction, commit),
            message_similarity=self.message_similarity(interaction, commit),
        )

    def combine(self, signals: LinkSignals) -> float:
        score = (
            self.time_weight * signals.time_proximity
            + self.file_weight * signals.file_overlap
            + self.message_weight * signals.message_similarity
        )
        return min(1.0, max(0.0, round(score, 6)))

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    def score(self, interaction: Interaction, commit: CommitInfo) -> CommitLink:
        signals = self.signals(interaction, commit)
        score = self.combine(signals)
        return CommitLink(
            interaction_id=interaction.id,
            commit_sha=commit.sha,
            score=score,
            signals=signals,
            accepted=score >= self.accept_threshold,
            commit_message=commit.message,
        )

    def rank(self, interaction: Interaction, commits: Iterable[CommitInfo]) -> List[CommitLink]:
        """All candidates, best first. Ties go to the closer commit, then sha."""
        scored = []
        for commit in commits:
            link = self.score(interaction, commit)
            distance = abs((commit.timestamp - interaction.timestamp).total_seconds())
            scored.append((-link.score, distance, commit.sha, link))
        scored.sort(key=lambda item: item[:3])
        return [item[3] for item in scored]

    def link(self, interaction: Interaction, candidate_commits: Sequence[CommitInfo]) -> Optional[CommitLink]:
        """Best-scoring link, accepted or not; None when there are no candidates"""
        ranked = self.rank(interaction, candidate_commits)
        if not ranked:
            return None
        best = ranked[0]
        logger.debug(
            "%s -> %s score=%.3f accepted=%s",
            interaction.id, best.commit_sha[:10], best.score, best.accepted,
        )
        return best

    def link_batch(
        self,
        interactions: Sequence[Interaction],
        commits: Sequence[CommitInfo],
    ) -> List[CommitLink]:
        """Retroactive import: best link per Interaction over historical commits"""
        links = []
        for interaction in interactions:
            link = self.link(interaction, commits)
            if link is not None:
                links.append(link)
        accepted = sum(1 for link in links if link.accepted)
        logger.info(
            "Batch linked %d interactions against %d commits: %d accepted",
            len(interactions), len(commits), accepted,
        )
        return links
