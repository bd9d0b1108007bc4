"""
SQLAlchemy persistence for rate cards, their slabs and fees.

Each card is written in one transaction together with its slabs and fees,
after locking the (platform, category) key row and re-checking overlaps, so
concurrent imports cannot both insert conflicting cards.
"""

import logging
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from flask import current_app, has_app_context
from sqlalchemy import (
    create_engine, Column, String, Integer, Numeric, Date, DateTime, Boolean, Enum, Text, JSON,
    ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .errors import RateCardConflictError, ErrorCode
from .models import (
    RateCard, Slab, FeeRule, SettlementConfig, CommissionType, FeeType, SettlementBasis, canon_id,
    PERCENT_PLACES, TAX_PLACES, MONEY_PLACES, FEE_VALUE_PLACES,
)
from .overlap import find_conflict

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class DBRateCard(Base):
    """Rate card header row."""
    __tablename__ = 'rate_cards'

    id = Column(String(50), primary_key=True, default=lambda: f"rc_{uuid.uuid4().hex[:16]}")
    platform_id = Column(String(100), nullable=False)
    category_id = Column(String(100), nullable=False)
    commission_type = Column(Enum(CommissionType), nullable=False)
    commission_percent = Column(Numeric(6, PERCENT_PLACES))
    gst_percent = Column(Numeric(5, TAX_PLACES), nullable=False, default=18)
    tcs_percent = Column(Numeric(5, TAX_PLACES), nullable=False, default=1)
    settlement_basis = Column(Enum(SettlementBasis), nullable=False)
    t_plus_days = Column(Integer)
    weekly_weekday = Column(Integer)
    bi_weekly_weekday = Column(Integer)
    bi_weekly_which = Column(String(10))
    monthly_day = Column(String(3))
    grace_days = Column(Integer, nullable=False, default=0)
    effective_from = Column(Date, nullable=False)
    effective_to = Column(Date)
    global_min_price = Column(Numeric(12, MONEY_PLACES))
    global_max_price = Column(Numeric(12, MONEY_PLACES))
    notes = Column(Text)
    archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    slabs = relationship('DBRateCardSlab', cascade='all, delete-orphan',
                         order_by='DBRateCardSlab.position', lazy='selectin')
    fees = relationship('DBRateCardFee', cascade='all, delete-orphan',
                        order_by='DBRateCardFee.id', lazy='selectin')

    __table_args__ = (
        Index('idx_rate_card_key_from', 'platform_id', 'category_id', 'effective_from'),
        CheckConstraint('gst_percent >= 0 AND gst_percent <= 28', name='ck_rate_card_gst'),
        CheckConstraint('tcs_percent >= 0 AND tcs_percent <= 5', name='ck_rate_card_tcs'),
        CheckConstraint('effective_to IS NULL OR effective_to > effective_from', name='ck_rate_card_dates'),
    )


class DBRateCardSlab(Base):
    """Price band of a tiered rate card."""
    __tablename__ = 'rate_card_slabs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    rate_card_id = Column(String(50), ForeignKey('rate_cards.id', ondelete='CASCADE'), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    min_price = Column(Numeric(12, MONEY_PLACES), nullable=False)
    max_price = Column(Numeric(12, MONEY_PLACES))
    commission_percent = Column(Numeric(6, PERCENT_PLACES), nullable=False)


class DBRateCardFee(Base):
    """Fee rule of a rate card."""
    __tablename__ = 'rate_card_fees'

    id = Column(Integer, primary_key=True, autoincrement=True)
    rate_card_id = Column(String(50), ForeignKey('rate_cards.id', ondelete='CASCADE'), nullable=False, index=True)
    fee_code = Column(String(20), nullable=False)
    fee_type = Column(Enum(FeeType), nullable=False)
    fee_value = Column(Numeric(12, FEE_VALUE_PLACES), nullable=False)

    __table_args__ = (
        UniqueConstraint('rate_card_id', 'fee_code', 'fee_type', name='uq_rate_card_fee'),
    )


class DBRateCardKey(Base):
    """One row per (platform, category); locked while a card for that key is written."""
    __tablename__ = 'rate_card_keys'

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform_id = Column(String(100), nullable=False)
    category_id = Column(String(100), nullable=False)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('platform_id', 'category_id', name='uq_rate_card_key'),
    )


class DBReconciliationCheck(Base):
    """Result of comparing a settled amount with the expected payout."""
    __tablename__ = 'reconciliation_checks'

    id = Column(String(50), primary_key=True, default=lambda: f"rec_{uuid.uuid4().hex[:16]}")
    order_id = Column(String(100), nullable=False, index=True)
    marketplace = Column(String(100), nullable=False)
    category = Column(String(100), nullable=False)
    order_date = Column(Date, nullable=False)
    mrp = Column(Numeric(12, MONEY_PLACES), nullable=False)
    actual_settlement_amount = Column(Numeric(12, MONEY_PLACES), nullable=False)
    expected_payout = Column(Numeric(12, MONEY_PLACES), nullable=False)
    delta = Column(Numeric(12, MONEY_PLACES), nullable=False)
    mismatch_flag = Column(Boolean, nullable=False)
    reco_status = Column(String(20), nullable=False)
    rate_card_id = Column(String(50))
    breakdown = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class DatabaseService:
    """Rate card store."""

    def __init__(self, database_url: Optional[str] = None):
        """
        Initialize the database service.

        Args:
            database_url: Database connection URL
        """
        self.database_url = database_url or os.getenv('DATABASE_URL', 'sqlite:///ratecards.db')

        if self.database_url.startswith('sqlite'):
            engine_options = {'connect_args': {'check_same_thread': False}}
            if ':memory:' in self.database_url or self.database_url == 'sqlite://':
                # Every session must see the same in-memory database
                engine_options['poolclass'] = StaticPool
            self.engine = create_engine(self.database_url, **engine_options)
        else:
            self.engine = create_engine(
                self.database_url,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
                pool_recycle=3600
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine,
                                         expire_on_commit=False)

    def init_db(self):
        """Create the tables."""
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Session:
        """Context manager yielding a session; commits on success, rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_rate_cards(self, platform_id: Optional[str] = None, category_id: Optional[str] = None,
                        include_archived: bool = True) -> List[RateCard]:
        """
        List rate cards, most recent effective_from first.

        Args:
            platform_id: Restrict to one platform (case-insensitive)
            category_id: Restrict to one category (case-insensitive)
            include_archived: Include archived cards
        """
        with self.get_session() as session:
            query = session.query(DBRateCard)
            if platform_id:
                query = query.filter(DBRateCard.platform_id == canon_id(platform_id))
            if category_id:
                query = query.filter(DBRateCard.category_id == canon_id(category_id))
            if not include_archived:
                query = query.filter(DBRateCard.archived.is_(False))
            rows = query.order_by(DBRateCard.effective_from.desc(), DBRateCard.created_at.desc()).all()
            return [self._to_domain(row) for row in rows]

    def get_rate_card(self, rate_card_id: str) -> Optional[RateCard]:
        with self.get_session() as session:
            row = session.query(DBRateCard).filter_by(id=rate_card_id).first()
            return self._to_domain(row) if row else None

    def insert_rate_card(self, card: RateCard, allow_overlap: bool = False) -> RateCard:
        """
        Insert a card with its slabs and fees in a single transaction.

        The key row for (platform, category) is locked first and existing
        cards are re-checked inside the same transaction.

        Args:
            card: Validated rate card
            allow_overlap: Accept a card overlapping a live card with a different structure

        Returns:
            The persisted card, with its id

        Raises:
            RateCardConflictError: exact duplicate, or unconfirmed overlap
        """
        platform_id = canon_id(card.platform_id)
        category_id = canon_id(card.category_id)

        with self.get_session() as session:
            self._lock_key(session, platform_id, category_id)

            existing = [
                self._to_domain(row)
                for row in session.query(DBRateCard).filter_by(platform_id=platform_id, category_id=category_id).all()
            ]
            match = find_conflict(card, existing)
            if match and match.exact:
                raise RateCardConflictError(
                    f"Exact duplicate of existing rate card {match.existing.id}",
                    ErrorCode.RATE_CARD_DUPLICATE,
                    match.existing.id,
                )
            if match and not allow_overlap:
                raise RateCardConflictError(
                    f"Overlaps existing rate card {match.existing.id}; confirmation required",
                    ErrorCode.RATE_CARD_OVERLAP_UNCONFIRMED,
                    match.existing.id,
                )

            row = self._to_row(card, platform_id, category_id)
            session.add(row)
            session.flush()
            logger.info(f"Rate card {row.id} created for {platform_id}/{category_id}")
            return self._to_domain(row)

    def archive_rate_card(self, rate_card_id: str) -> Optional[RateCard]:
        with self.get_session() as session:
            row = session.query(DBRateCard).filter_by(id=rate_card_id).with_for_update().first()
            if row is None:
                return None
            row.archived = True
            row.updated_at = _utcnow()
            session.flush()
            logger.info(f"Rate card {rate_card_id} archived")
            return self._to_domain(row)

    def record_reconciliation(self, check_data: Dict[str, Any]) -> str:
        """Store a reconciliation check and return its id."""
        with self.get_session() as session:
            check = DBReconciliationCheck(**check_data)
            session.add(check)
            session.flush()
            return check.id

    def get_reconciliation_checks(self, order_id: str) -> List[Dict[str, Any]]:
        with self.get_session() as session:
            checks = session.query(DBReconciliationCheck).filter_by(order_id=order_id).order_by(
                DBReconciliationCheck.created_at.desc()
            ).all()
            return [
                {
                    'id': check.id,
                    'order_id': check.order_id,
                    'expected_payout': float(check.expected_payout),
                    'actual_settlement_amount': float(check.actual_settlement_amount),
                    'delta': float(check.delta),
                    'mismatch_flag': check.mismatch_flag,
                    'reco_status': check.reco_status,
                    'rate_card_id': check.rate_card_id,
                }
                for check in checks
            ]

    @staticmethod
    def _lock_key(session: Session, platform_id: str, category_id: str):
        """Serialize writers of one (platform, category) key."""
        key = session.query(DBRateCardKey).filter_by(
            platform_id=platform_id,
            category_id=category_id
        ).with_for_update().first()

        if key is None:
            key = DBRateCardKey(platform_id=platform_id, category_id=category_id, version=0)
            session.add(key)

        # The write takes SQLite's database lock too, where FOR UPDATE is a no-op
        key.version += 1
        session.flush()

    @staticmethod
    def _to_row(card: RateCard, platform_id: str, category_id: str) -> DBRateCard:
        settlement = card.settlement
        row = DBRateCard(
            platform_id=platform_id,
            category_id=category_id,
            commission_type=card.commission_type,
            commission_percent=card.commission_percent,
            gst_percent=card.gst_percent,
            tcs_percent=card.tcs_percent,
            settlement_basis=settlement.basis,
            t_plus_days=settlement.t_plus_days,
            weekly_weekday=settlement.weekly_weekday,
            bi_weekly_weekday=settlement.bi_weekly_weekday,
            bi_weekly_which=settlement.bi_weekly_which,
            monthly_day=str(settlement.monthly_day) if settlement.monthly_day is not None else None,
            grace_days=settlement.grace_days or 0,
            effective_from=card.effective_from,
            effective_to=card.effective_to,
            global_min_price=card.global_min_price,
            global_max_price=card.global_max_price,
            notes=card.notes,
            archived=False,
        )
        ordered_slabs = sorted(card.slabs, key=lambda slab: slab.min_price)
        row.slabs = [
            DBRateCardSlab(
                position=index,
                min_price=slab.min_price,
                max_price=slab.max_price,
                commission_percent=slab.commission_percent,
            )
            for index, slab in enumerate(ordered_slabs)
        ]
        row.fees = [
            DBRateCardFee(fee_code=fee.fee_code, fee_type=fee.fee_type, fee_value=fee.fee_value)
            for fee in card.fees
        ]
        return row

    @staticmethod
    def _to_domain(row: DBRateCard) -> RateCard:
        monthly_day = row.monthly_day
        if monthly_day is not None and monthly_day.isdigit():
            monthly_day = int(monthly_day)

        return RateCard(
            id=row.id,
            platform_id=row.platform_id,
            category_id=row.category_id,
            commission_type=row.commission_type,
            commission_percent=row.commission_percent,
            slabs=[
                Slab(min_price=slab.min_price, max_price=slab.max_price,
                     commission_percent=slab.commission_percent)
                for slab in row.slabs
            ],
            fees=[
                FeeRule(fee_code=fee.fee_code, fee_type=fee.fee_type, fee_value=fee.fee_value)
                for fee in row.fees
            ],
            gst_percent=row.gst_percent,
            tcs_percent=row.tcs_percent,
            settlement=SettlementConfig(
                basis=row.settlement_basis,
                t_plus_days=row.t_plus_days,
                weekly_weekday=row.weekly_weekday,
                bi_weekly_weekday=row.bi_weekly_weekday,
                bi_weekly_which=row.bi_weekly_which,
                monthly_day=monthly_day,
                grace_days=row.grace_days or 0,
            ),
            effective_from=row.effective_from,
            effective_to=row.effective_to,
            global_min_price=row.global_min_price,
            global_max_price=row.global_max_price,
            notes=row.notes,
            archived=bool(row.archived),
            created_at=row.created_at,
        )


# Global database service instance
db_service = None


def init_database(app):
    """Initialize the database service for a Flask application."""
    global db_service
    db_service = DatabaseService(app.config.get('DATABASE_URL'))
    db_service.init_db()
    app.extensions['ratecards_db'] = db_service
    return db_service


def get_db_service() -> DatabaseService:
    """Database service of the current application, or the global one."""
    if has_app_context() and 'ratecards_db' in current_app.extensions:
        return current_app.extensions['ratecards_db']
    if db_service is None:
        raise RuntimeError("Database service is not initialized; call init_database(app) first")
    return db_service
