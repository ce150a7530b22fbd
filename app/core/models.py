import uuid

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    TIMESTAMP,
    Text,
    JSON,
    text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


def generate_id() -> str:
    return uuid.uuid4().hex


IN_FLIGHT_FILTER = text("status IN ('queued', 'running')")


# =========================
# Analysis
# =========================
class Analysis(Base):
    """
    One logical analysis request (dimension slices, metric aggregates, ...).

    The partial unique index is the single-flight guard: the database refuses
    a second queued/running analysis for the same organization + target key.
    """

    __tablename__ = "analyses"
    __table_args__ = (
        Index(
            "uq_analyses_in_flight_target",
            "organization",
            "target_key",
            unique=True,
            postgresql_where=IN_FLIGHT_FILTER,
            sqlite_where=IN_FLIGHT_FILTER,
        ),
    )

    id = Column(String(32), primary_key=True, default=generate_id)

    organization = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False, server_default="custom")
    target_key = Column(String, nullable=False, index=True)  # "datasource:exposureQuery"

    status = Column(String(16), nullable=False, server_default="queued")

    params = Column(JSON, nullable=True)
    query_ids = Column(JSON, nullable=False, default=list)  # submission order

    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    finished_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    queries = relationship(
        "Query",
        back_populates="analysis",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Query (one submitted SQL statement)
# =========================
class Query(Base):
    """
    Persisted state of one query sent to a warehouse.

    Once the status leaves "running" the row is never written again.
    """

    __tablename__ = "queries"

    id = Column(String(32), primary_key=True, default=generate_id)

    organization = Column(String, nullable=False, index=True)

    analysis_id = Column(
        String(32),
        ForeignKey("analyses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)

    sql = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, server_default="running")

    external_handle = Column(String, nullable=True)

    raw_result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    error_kind = Column(String(32), nullable=True)

    started_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    finished_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # Relationships
    analysis = relationship("Analysis", back_populates="queries")
