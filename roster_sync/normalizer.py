"""
Profile normalization.

Turns raw directory entries into `ProfileRecord`s: validates the intake shape,
parses titles, classifies avatars and checks roles. Entries that cannot be
published are routed to the exclusion report with a reason.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from roster_sync.avatar import AvatarClassifier
from roster_sync.models import (
    AvatarDecision,
    Exclusion,
    ExclusionReason,
    NormalizationReport,
    ProfileRecord,
    Role,
    RoleFacts,
    SourceEntry,
    normalize_identity,
)
from roster_sync.roles import RoleValidator
from roster_sync.title_parser import parse_title

logger = logging.getLogger(__name__)


class ProfileNormalizer:
    """
    Builds the desired profile set from source entries.

    Args:
        classifier: Avatar classifier (owns the bounded download pool)
        validator: Role vocabulary validator
        run_timeout: Seconds after which pending avatar analyses are cancelled
            and resolved as `analysis-failed`. None disables the limit.
    """

    def __init__(self, classifier: AvatarClassifier, validator: RoleValidator,
                 run_timeout: Optional[float] = None):
        self.classifier = classifier
        self.validator = validator
        self.run_timeout = run_timeout

    async def normalize(self, entries: Iterable[Any]) -> NormalizationReport:
        report = NormalizationReport()
        pending: List[Tuple[SourceEntry, RoleFacts]] = []

        for raw in entries:
            entry = self._intake(raw)
            facts = parse_title(entry.title)
            if facts.is_alumni:
                report.alumni_count += 1
                self._exclude(report, entry, ExclusionReason.ALUMNI, f"title '{entry.title}'")
                continue
            pending.append((entry, facts))

        decisions = await self._classify_all(pending)

        seen = set()
        for (entry, facts), decision in zip(pending, decisions):
            record = self._build_record(entry, facts, decision)

            if not record.identity:
                self._exclude(report, entry, ExclusionReason.MISSING_IDENTITY, 'no email address')
            elif not record.display_name:
                self._exclude(report, entry, ExclusionReason.MISSING_NAME, 'no display name')
            elif not record.is_valid_role:
                self._exclude(report, entry, ExclusionReason.INVALID_ROLE,
                              f"position '{facts.position}', department '{facts.department}'")
            elif record.identity in seen:
                self._exclude(report, entry, ExclusionReason.DUPLICATE_IDENTITY,
                              'identity already used by an earlier entry')
            else:
                seen.add(record.identity)
                report.desired.append(record)
                if decision.is_default:
                    report.default_avatar_count += 1

        logger.info(f"Normalized {len(report.desired)} profiles, {len(report.exclusions)} excluded "
                    f"({report.alumni_count} alumni, {report.default_avatar_count} placeholder avatars)")
        return report

    def _intake(self, raw: Any) -> SourceEntry:
        if isinstance(raw, SourceEntry):
            return raw
        try:
            return SourceEntry.model_validate(raw)
        except ValidationError as e:
            # Unusable shape; it will be reported as missing its identity
            logger.warning(f"Malformed source entry: {e}")
            return SourceEntry()

    def _build_record(self, entry: SourceEntry, facts: RoleFacts, decision: AvatarDecision) -> ProfileRecord:
        validation = self.validator.validate(facts.position, facts.department)
        role = None
        if validation.is_valid:
            role = Role(position=facts.position, department=facts.department)
        return ProfileRecord(
            identity=normalize_identity(entry.email),
            display_name=entry.name or '',
            role=role,
            avatar_ref=entry.image_ref,
            avatar_decision=decision,
            is_alumni=False,
            is_valid_role=validation.is_valid,
            source_id=entry.source_id,
            username=entry.username,
        )

    async def _classify_all(self, pending: List[Tuple[SourceEntry, RoleFacts]]) -> List[AvatarDecision]:
        if not pending:
            return []

        tasks = [
            asyncio.create_task(self.classifier.classify(entry.image_ref, entry.name or entry.email or 'Unknown'))
            for entry, _ in pending
        ]
        done, not_done = await asyncio.wait(tasks, timeout=self.run_timeout)

        if not_done:
            logger.warning(f"Avatar analysis timed out after {self.run_timeout}s; "
                           f"{len(not_done)} pending images kept as authentic")
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)

        decisions = []
        for task in tasks:
            if task in done and not task.cancelled() and task.exception() is None:
                decisions.append(task.result())
            else:
                decisions.append(AvatarDecision.analysis_failed())
        return decisions

    def _exclude(self, report: NormalizationReport, entry: SourceEntry,
                 reason: ExclusionReason, detail: str) -> None:
        exclusion = Exclusion(
            identity=normalize_identity(entry.email),
            display_name=entry.name or '',
            reason=reason,
            detail=detail,
        )
        report.exclusions.append(exclusion)
        logger.info(f"Excluded {exclusion.display_name or '<unnamed>'} "
                    f"<{exclusion.identity or 'no email'}>: {reason.value} ({detail})")


def normalize_entries(entries: Iterable[Dict[str, Any]], classifier: AvatarClassifier,
                      validator: RoleValidator, run_timeout: Optional[float] = None) -> NormalizationReport:
    """Synchronous wrapper running a full normalization pass on a fresh event loop."""
    async def _run() -> NormalizationReport:
        async with classifier:
            return await ProfileNormalizer(classifier, validator, run_timeout).normalize(entries)

    return asyncio.run(_run())
