import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import redis

from .config import settings
from .errors import ConfigurationFault, RuleViolation
from .models import DurationRule, ExamType, normalize_subject

logger = logging.getLogger(__name__)

RuleKey = Tuple[ExamType, Optional[str], Optional[int]]


def _field(exam_type: ExamType, subject: Optional[str], year: Optional[int]) -> str:
    subject = normalize_subject(subject) or ""
    return f"{ExamType(exam_type).value}|{subject}|{'' if year is None else year}"


class DurationRuleStore:
    """Duration rules kept in one Redis hash, one field per (exam type, subject, year)."""

    def __init__(self, client: redis.Redis, prefix: str = settings.REDIS_PREFIX):
        self.client = client
        self.key = f"{prefix}:duration_rules"

    def ensure_defaults(self, defaults: Optional[dict] = None):
        """Seed the exam-type default rows unless an admin already set them."""
        defaults = defaults or settings.DEFAULT_DURATIONS
        for exam_type in ExamType:
            rule = DurationRule(
                exam_type=exam_type,
                duration_seconds=defaults[exam_type.value],
                updated_at=datetime.now(timezone.utc),
            )
            if self.client.hsetnx(self.key, _field(exam_type, None, None), rule.model_dump_json()):
                logger.info(f"Seeded default duration for {exam_type.value}")

    def get(
        self, exam_type: ExamType, subject: Optional[str] = None, year: Optional[int] = None
    ) -> Optional[DurationRule]:
        subject = normalize_subject(subject)
        raw = self.client.hget(self.key, _field(exam_type, subject, year))
        return DurationRule.model_validate_json(raw) if raw else None

    def get_many(self, keys: List[RuleKey]) -> List[Optional[DurationRule]]:
        if not keys:
            return []
        raws = self.client.hmget(self.key, [_field(*k) for k in keys])
        return [DurationRule.model_validate_json(r) if r else None for r in raws]

    def upsert_rule(self, rule: DurationRule) -> DurationRule:
        rule = rule.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        self.client.hset(self.key, _field(*rule.key), rule.model_dump_json())
        logger.info(
            f"Duration rule set: {rule.exam_type.value}/{rule.subject}/{rule.year} "
            f"= {rule.duration_seconds}s"
        )
        return rule

    def delete_rule(
        self, exam_type: ExamType, subject: Optional[str] = None, year: Optional[int] = None
    ) -> bool:
        subject = normalize_subject(subject)
        if subject is None and year is None:
            raise RuleViolation(
                f"The default rule for {ExamType(exam_type).value} cannot be deleted",
                reason="default_rule_required",
            )
        removed = bool(self.client.hdel(self.key, _field(exam_type, subject, year)))
        if removed:
            logger.info(f"Duration rule deleted: {ExamType(exam_type).value}/{subject}/{year}")
        return removed

    def list_rules(self) -> List[DurationRule]:
        rules = [DurationRule.model_validate_json(r) for r in self.client.hvals(self.key)]
        # Exam type, then subject nulls first, then year nulls first
        rules.sort(
            key=lambda r: (
                r.exam_type.value,
                r.subject is not None,
                r.subject or "",
                r.year is not None,
                r.year or 0,
            )
        )
        return rules


class DurationResolver:
    """Resolves a session duration from the most specific matching rule.

    Order: (type, subject, year) -> (type, year) -> (type, subject) -> (type).
    Nothing is cached; rule changes apply to the next call.
    """

    def __init__(self, store: DurationRuleStore):
        self.store = store

    @staticmethod
    def candidate_keys(
        exam_type: ExamType, subject: Optional[str] = None, year: Optional[int] = None
    ) -> List[RuleKey]:
        subject = normalize_subject(subject)
        keys: List[RuleKey] = []
        if subject and year is not None:
            keys.append((exam_type, subject, year))
        if year is not None:
            keys.append((exam_type, None, year))
        if subject:
            keys.append((exam_type, subject, None))
        keys.append((exam_type, None, None))
        return keys

    def resolve(
        self, exam_type: ExamType, subject: Optional[str] = None, year: Optional[int] = None
    ) -> int:
        keys = self.candidate_keys(exam_type, subject, year)
        for rule in self.store.get_many(keys):
            if rule is not None and rule.duration_seconds > 0:
                return rule.duration_seconds
        raise ConfigurationFault(
            f"No duration rule for {ExamType(exam_type).value}, not even a default"
        )
