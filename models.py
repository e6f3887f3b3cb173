from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()


class Source(Base):
    __tablename__ = 'sources'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    name = Column(String(200), nullable=False)
    kind = Column(String(20), nullable=False)
    country = Column(String(2))
    language = Column(String(10))
    currency = Column(String(3))
    website = Column(String(2000))
    description = Column(Text)
    frequency = Column(String(1), nullable=False, default='d')
    is_history_supported = Column(Boolean, nullable=False, default=False)
    method = Column(String(1), nullable=False, default='a')
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    batches = relationship("SourceBatch", back_populates="source", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ux_sources_name_kind', 'name', 'kind', unique=True),
    )

    def __repr__(self):
        return f"<Source(id={self.id}, name='{self.name}', kind='{self.kind}')>"


class SourceBatch(Base):
    __tablename__ = 'source_batches'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    source_id = Column(Uuid(as_uuid=True), ForeignKey('sources.id', ondelete='CASCADE'), nullable=False)
    hash = Column(String(40), unique=True, nullable=False)
    date = Column(Date)
    record_count = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    source = relationship("Source", back_populates="batches")
    prices = relationship(
        "RawPrice",
        back_populates="batch",
        cascade="all, delete-orphan",
    )

    @property
    def is_complete(self):
        return self.completed_at is not None

    def __repr__(self):
        return f"<SourceBatch(id={self.id}, source_id={self.source_id}, hash='{self.hash}')>"


class RawPrice(Base):
    __tablename__ = 'raw_prices'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    batch_id = Column(Uuid(as_uuid=True), ForeignKey('source_batches.id', ondelete='CASCADE'), nullable=False)
    date = Column(Date, index=True)
    product_raw = Column(String(500), index=True)
    country_id = Column(String(2))
    currency = Column(String(3))
    page_url = Column(String(2000))
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    batch = relationship("SourceBatch", back_populates="prices")

    __table_args__ = (
        Index('ix_raw_prices_batch_id_date', 'batch_id', 'date'),
    )

    def __repr__(self):
        return f"<RawPrice(id={self.id}, batch_id={self.batch_id}, product='{self.product_raw}')>"


class Alarm(Base):
    __tablename__ = 'alarms'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    source_id = Column(Uuid(as_uuid=True), ForeignKey('sources.id', ondelete='CASCADE'), nullable=False, index=True)
    type = Column(String(10), nullable=False)
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    detail_url = Column(String(2000))
    created_at = Column(DateTime, default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Alarm(id={self.id}, source_id={self.source_id}, type='{self.type}')>"
