"""
Governance data models: alerts, acknowledgements, adaptive weights,
suppression snapshots and the persistence audit trail
"""
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

from alertgov.db import utcnow

Base = declarative_base()


class GovernanceAlert(Base):
    """Alert raised by a governance rule; immutable apart from dedup counters"""
    __tablename__ = "governance_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String, index=True, nullable=False)              # rule id, e.g. TrendBreakout
    strategy = Column(String, index=True, nullable=False, default="global")
    severity = Column(String, index=True, nullable=False)          # info|warn|critical
    message = Column(Text, nullable=False)
    rationale = Column(JSON, nullable=True)
    hash = Column(String, index=True, nullable=False)
    dedup_group = Column(String, index=True, nullable=False)       # strategy|code|message
    context = Column(JSON, nullable=True)
    generated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    last_seen_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    occurrences = Column(Integer, nullable=False, default=1)
    suppressed = Column(Boolean, nullable=False, default=False, index=True)  # collapsed by the suppression state machine

    ack = relationship("AlertAck", back_populates="alert", uselist=False, cascade="all, delete-orphan")


class AlertAck(Base):
    """Live acknowledgement; at most one per alert"""
    __tablename__ = "governance_alert_acks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, ForeignKey("governance_alerts.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    actor = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    acknowledged_at = Column(DateTime, default=utcnow, index=True, nullable=False)

    alert = relationship("GovernanceAlert", back_populates="ack")


class WeightsLatest(Base):
    """Latest weight vector and controller state per version (upserted)"""
    __tablename__ = "adaptive_weights_latest"

    version = Column(String, primary_key=True)
    w1 = Column(Float, nullable=False)
    w2 = Column(Float, nullable=False)
    w3 = Column(Float, nullable=False)
    w4 = Column(Float, nullable=False)
    w5 = Column(Float, nullable=False)
    freeze_active = Column(Boolean, nullable=False, default=False)
    freeze_since_cycle = Column(Integer, nullable=True)
    last_adjustment_cycle = Column(Integer, nullable=True)
    cycle = Column(Integer, nullable=True)
    consecutive_zero_error_cycles = Column(Integer, nullable=True)
    metrics_snapshot = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class WeightsHistory(Base):
    """Append-only record of every triggered weight save"""
    __tablename__ = "adaptive_weights_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String, index=True, nullable=False)
    w1 = Column(Float, nullable=False)
    w2 = Column(Float, nullable=False)
    w3 = Column(Float, nullable=False)
    w4 = Column(Float, nullable=False)
    w5 = Column(Float, nullable=False)
    reason = Column(String, index=True, nullable=False)            # applied|cooldown|freeze
    cycle = Column(Integer, nullable=True)
    last_adjustment_cycle = Column(Integer, nullable=True)
    freeze_active = Column(Boolean, nullable=False, default=False)
    meta = Column(JSON, nullable=True)                             # rationale, errs, deltas
    metrics_snapshot = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)


class SuppressionStateLatest(Base):
    """Latest snapshot of one suppression group"""
    __tablename__ = "suppression_state_latest"

    dedup_group = Column(String, primary_key=True)
    state = Column(String, nullable=False)
    noise_score = Column(Float, nullable=True)
    noise_score_enter = Column(Float, nullable=True)
    noise_score_exit = Column(Float, nullable=True)
    suppressed_count = Column(Integer, nullable=True)
    last_volume = Column(Integer, nullable=True)
    severity_scope = Column(JSON, nullable=True)
    strategy = Column(String, nullable=True)
    last_state_change_at = Column(DateTime, nullable=True)
    last_suppression_start = Column(DateTime, nullable=True)
    consecutive_stable = Column(Integer, nullable=True)
    dynamic_thresholds = Column(JSON, nullable=True)
    robust_high_streak = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class PersistenceAudit(Base):
    """One row per attempted save/load"""
    __tablename__ = "governance_persistence_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, index=True, nullable=False)            # SAVE_WEIGHTS|LOAD_WEIGHTS|SAVE_SUPPRESSION|LOAD_SUPPRESSION
    entity = Column(String, nullable=False)                        # weights|suppression
    version = Column(String, nullable=True)
    count = Column(Integer, nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)


class StrategyWeightSnapshot(Base):
    """Point-in-time weight of a strategy, input to trend analytics"""
    __tablename__ = "strategy_weight_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    strategy = Column(String, index=True, nullable=False)
    weight = Column(Float, nullable=False)
    spread = Column(Float, nullable=True)
    version = Column(String, nullable=True)
    meta = Column(JSON, nullable=True)
    captured_at = Column(DateTime, default=utcnow, index=True, nullable=False)
