"""SQLAlchemy models for database."""
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from maintainarr.core.models import ActionType, MediaType, ReviewStatus, ScanStatus, utcnow

Base = declarative_base()


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=20, validate_strings=True)


class MaintenanceRule(Base):
    """Règle de maintenance configurée par un admin."""
    __tablename__ = "maintenance_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)
    media_type = Column(_enum(MediaType), nullable=False)
    criteria = Column(JSON, nullable=False)  # RuleCriteria.to_json()
    action_type = Column(_enum(ActionType), default=ActionType.FLAG_FOR_REVIEW, nullable=False)
    schedule = Column(String, nullable=True)  # cron (5 champs)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    scans = relationship("MaintenanceScan", back_populates="rule", cascade="all, delete-orphan")


class MaintenanceScan(Base):
    """Une exécution d'une règle sur le catalogue."""
    __tablename__ = "maintenance_scans"
    __table_args__ = (
        # Un seul scan actif par règle
        Index(
            "uq_maintenance_scans_active_rule",
            "rule_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'RUNNING')"),
            postgresql_where=text("status IN ('PENDING', 'RUNNING')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("maintenance_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(_enum(ScanStatus), default=ScanStatus.PENDING, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    items_scanned = Column(Integer, default=0, nullable=False)
    items_flagged = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    rule = relationship("MaintenanceRule", back_populates="scans")
    candidates = relationship("MaintenanceCandidate", back_populates="scan", cascade="all, delete-orphan")


class MaintenanceCandidate(Base):
    """Item signalé par une règle, en attente de revue ou de suppression."""
    __tablename__ = "maintenance_candidates"
    __table_args__ = (
        UniqueConstraint("rule_id", "plex_rating_key", name="uq_maintenance_candidates_rule_item"),
    )

    id = Column(Integer, primary_key=True, index=True)
    scan_id = Column(Integer, ForeignKey("maintenance_scans.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(Integer, ForeignKey("maintenance_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    media_type = Column(_enum(MediaType), nullable=False)

    # IDs externes
    plex_rating_key = Column(String, nullable=False)
    radarr_id = Column(Integer, nullable=True)
    sonarr_id = Column(Integer, nullable=True)  # série, ou episodefile pour un épisode
    tmdb_id = Column(Integer, nullable=True)
    tvdb_id = Column(Integer, nullable=True)
    season_number = Column(Integer, nullable=True)
    episode_number = Column(Integer, nullable=True)

    # Snapshot du catalogue
    title = Column(String, nullable=False)
    year = Column(Integer, nullable=True)
    poster = Column(String, nullable=True)
    file_path = Column(String, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    play_count = Column(Integer, default=0, nullable=False)
    last_watched_at = Column(DateTime, nullable=True)
    added_at = Column(DateTime, nullable=True)
    rating = Column(Float, nullable=True)

    matched_rules = Column(JSON, default=list, nullable=False)  # [{ruleId, ruleName, operator, conditions}]
    flagged_at = Column(DateTime, default=utcnow, nullable=False)

    review_status = Column(_enum(ReviewStatus), default=ReviewStatus.PENDING, nullable=False, index=True)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String, nullable=True)
    review_note = Column(Text, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    deletion_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    scan = relationship("MaintenanceScan", back_populates="candidates")
    rule = relationship("MaintenanceRule", viewonly=True)


class MaintenanceDeletionLog(Base):
    """Historique des suppressions (survit à la suppression de la règle)."""
    __tablename__ = "maintenance_deletion_logs"

    id = Column(Integer, primary_key=True, index=True)
    candidate_id = Column(Integer, nullable=True)
    media_type = Column(_enum(MediaType), nullable=False)
    title = Column(String, nullable=False)
    year = Column(Integer, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    deleted_by = Column(String, nullable=False, index=True)
    deleted_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    deleted_from = Column(String, nullable=False)  # Radarr, Sonarr
    files_deleted = Column(Boolean, default=True, nullable=False)
    rule_names = Column(JSON, default=list, nullable=False)
