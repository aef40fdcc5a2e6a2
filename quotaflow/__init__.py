"""
quotaflow - usage quotas and plan enforcement.

Simple usage:
    from quotaflow import EnforcementGate

    gate = EnforcementGate()
    gate.catalog.seed_defaults()

    decision = gate.check_quota("ws-1", "transcriptions", 1)
    if decision.allowed:
        gate.record_usage("ws-1", "transcriptions", 1)
    else:
        print(decision.suggestion)

Concurrency slots (hard admission):
    decision = gate.reserve("ws-1", "concurrentJobs")
    try:
        run_job()
    finally:
        gate.release(decision.reservation_token)

Recommendations:
    from quotaflow import RecommendationEngine

    engine = RecommendationEngine(gate.storage, gate.catalog)
    rec = engine.analyze("ws-1")

Persistent storage:
    from quotaflow import SQLiteStorage

    gate = EnforcementGate(SQLiteStorage("quotaflow.db"))
"""

from quotaflow.limits import Limit, Resource, PeriodType
from quotaflow.config import get_settings, set_settings, reset_settings, QuotaSettings
from quotaflow.errors import (
    DenialReason,
    QuotaflowError,
    StorageUnavailable,
    InvalidOverrideConfiguration,
    InvalidTransition,
    NotFoundError,
)
from quotaflow.models import Plan, CustomOverride, QuotaDecision, Recommendation
from quotaflow.catalog import PlanCatalog
from quotaflow.ledger import UsageLedger
from quotaflow.resolver import PlanResolver
from quotaflow.enforcement import EnforcementGate
from quotaflow.recommendations import RecommendationEngine
from quotaflow.storage import InMemoryStorage, SQLiteStorage


__version__ = "1.0.0"
