from __future__ import annotations


class RuleEngineError(Exception):
    """Base class for all rule engine errors."""


class ConfigError(RuleEngineError):
    """Invalid rule set: malformed file, duplicate group name, bad duration, etc.

    Fatal at load time. On hot reload the previously loaded rule set stays active.
    """


class RuleEvaluationError(RuleEngineError):
    """Failure local to one rule's one tick. Never aborts the rule's group."""

    reason = "error"


class QueryError(RuleEvaluationError):
    """Expression malformed, rejected by the query backend, or backend unreachable."""

    reason = "query"


class QueryTimeoutError(RuleEvaluationError):
    """Query backend did not answer within the evaluation budget."""

    reason = "timeout"


class DuplicateLabelSetError(RuleEvaluationError):
    """Result vector has two samples with the same label set after rule labels are applied."""

    reason = "duplicate_labelset"


class WriteError(RuleEvaluationError):
    """Recorded series could not be written."""

    reason = "write"


class SchedulerOverrunError(RuleEngineError):
    """A group's previous tick was still running when the next one became due."""
