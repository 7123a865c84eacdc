from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
)
import uuid
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class Endpoint(Base):
    __tablename__ = 'endpoints'

    id = Column(String(36), primary_key=True, default=new_id)
    # custom URL path, e.g. "sales-report"; when null the endpoint is addressed by id
    path = Column(String(100), nullable=True, unique=True, index=True)

    name = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)
    type = Column(String(50), nullable=False)
    target = Column(Text, nullable=False)
    method = Column(String(10), nullable=False, default="GET")
    parameters = Column(JSON, nullable=False, default=list)
    rate_limit = Column(Integer, nullable=False, default=100)
    status = Column(String(20), nullable=False, default="draft")
    tags = Column(JSON, nullable=False, default=list)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_by = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=False, default=dict)


class Credential(Base):
    __tablename__ = 'api_keys'

    id = Column(String(36), primary_key=True, default=new_id)
    secret_hash = Column(String(128), nullable=False, unique=True, index=True)
    endpoint_id = Column(String(36), ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)

    extra = Column("metadata", JSON, nullable=False, default=dict)


class UsageAggregate(Base):
    __tablename__ = 'api_usage_log'
    __table_args__ = (
        UniqueConstraint("credential_id", "endpoint_id", "usage_day", name="uq_usage_per_day"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    credential_id = Column(String(36), nullable=False, index=True)
    endpoint_id = Column(String(36), nullable=False, index=True)
    usage_day = Column(Date, nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    last_used = Column(DateTime(timezone=True), nullable=False)


class AuditRecord(Base):
    __tablename__ = 'api_audit_log'

    id = Column(String(36), primary_key=True, default=new_id)
    request_id = Column(String(64), nullable=True, index=True)
    endpoint_id = Column(String(36), nullable=True, index=True)
    credential_id = Column(String(36), nullable=True, index=True)

    method = Column(String(10), nullable=False)
    url = Column(String(500), nullable=False)
    route_path = Column(String(500), nullable=True)
    ip = Column(String(45), nullable=True)
    forwarded_for = Column(String(255), nullable=True)
    user_agent = Column(String(500), nullable=True)
    body = Column(JSON, nullable=True)
    request_size = Column(Integer, nullable=True)

    status_code = Column(Integer, nullable=False)
    response_size = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    error_message = Column(String(1000), nullable=True)
