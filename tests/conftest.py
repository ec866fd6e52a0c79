# tests/conftest.py
"""
Pytest configuration and shared fixtures for the network engine tests.

Every test gets a fresh SQLite database bound through core.db,
default configuration, a fixed virtual clock and empty event/lock registries.

Run:
    pytest tests/ -v
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine

from config import Config
from core import db
from models import Base, Member, Transaction, PeriodStats, TeamVolume, TierQualification
from network_engine.config.tiers import reset_tier_table_cache
from network_engine.events.event_bus import eventBus
from network_engine.utils.keyed_locks import placementLocks, chainLocks
from network_engine.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

HOUSE_ACCOUNT_ID = 1
TEST_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
TEST_PERIOD = "2025-01"


# =============================================================================
# GLOBAL STATE
# =============================================================================

@pytest.fixture(autouse=True)
def reset_engine_state():
    """Defaults, virtual time and empty registries for every test."""
    Config.reset()
    Config.set(Config.DEFAULT_SPONSOR_ID, HOUSE_ACCOUNT_ID, source="tests")
    reset_tier_table_cache()
    eventBus.clear()
    placementLocks.clear()
    chainLocks.clear()
    timeMachine.setTime(TEST_NOW)

    yield

    timeMachine.resetToRealTime()
    eventBus.clear()
    reset_tier_table_cache()
    Config.reset()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    """
    File-backed SQLite database for the test.

    Every session gets its own connection, so sessions opened by services
    and stats lookups running in executor threads stay isolated.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    db.configure(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    session = db.get_session()
    yield session
    session.close()


# =============================================================================
# FACTORY FIXTURES
# =============================================================================

@pytest.fixture
def make_member(session):
    """
    Create and commit a member.

    Usage:
        sponsor = make_member(2, tierId="gold", performanceScore="7.5")
        buyer = make_member(3, sponsorId=2)
    """

    def _make(
            memberId,
            sponsorId=None,
            tierId=None,
            status="active",
            performanceScore=None,
            teamVolume=None,
            volumePeriodId=None
    ):
        member = Member(
            memberID=memberId,
            sponsorID=sponsorId,
            tierID=tierId,
            status=status,
            performanceScore=Decimal(str(performanceScore)) if performanceScore is not None else None,
            monthlyTeamVolume=Decimal(str(teamVolume)) if teamVolume is not None else Decimal("0"),
            volumePeriodID=volumePeriodId
        )
        session.add(member)
        if teamVolume is not None and volumePeriodId is not None:
            session.add(TeamVolume(
                memberID=memberId,
                periodID=volumePeriodId,
                amount=Decimal(str(teamVolume)),
                transactionCount=1
            ))
        session.commit()
        return member

    return _make


@pytest.fixture
def make_chain(make_member):
    """
    Create a straight sponsorship line and return it buyer-first.

    make_chain(10, 4) creates 13 <- 12 <- 11 <- 10, where 13 is the root
    and 10 the buyer; tiers applies to the ancestors, nearest first.
    """

    def _make(firstId, length, tiers=None, **kwargs):
        ids = list(range(firstId, firstId + length))
        members = {}
        for index, memberId in reversed(list(enumerate(ids))):
            sponsorId = ids[index + 1] if index + 1 < len(ids) else None
            tierId = None
            if tiers and index >= 1 and index - 1 < len(tiers):
                tierId = tiers[index - 1]
            members[memberId] = make_member(memberId, sponsorId=sponsorId, tierId=tierId, **kwargs)
        return [members[memberId] for memberId in ids]

    return _make


@pytest.fixture
def make_transaction(session):
    """Create and commit a transaction (confirmed now by default)."""

    def _make(transactionId, memberId, amount, status="confirmed", confirmedAt=None):
        transaction = Transaction(
            transactionID=transactionId,
            memberID=memberId,
            amount=Decimal(str(amount)),
            status=status,
            confirmedAt=confirmedAt or (TEST_NOW if status in Transaction.COMMISSIONABLE_STATUSES else None),
            createdAt=TEST_NOW
        )
        session.add(transaction)
        session.commit()
        return transaction

    return _make


@pytest.fixture
def make_snapshot(session):
    """Write a PeriodStats snapshot directly."""

    def _make(memberId, periodId=TEST_PERIOD, teamVolume=0, tierId=None):
        stats = PeriodStats(
            memberID=memberId,
            periodID=periodId,
            teamVolume=Decimal(str(teamVolume)),
            tierID=tierId,
            wasActive=1
        )
        session.add(stats)
        session.commit()
        return stats

    return _make


@pytest.fixture
def make_referrals(make_member):
    """Create count direct referrals of sponsorId with ids from firstId."""

    def _make(sponsorId, count, firstId, status="active"):
        return [
            make_member(firstId + offset, sponsorId=sponsorId, status=status)
            for offset in range(count)
        ]

    return _make


@pytest.fixture
def make_qualification(session):
    """Create a current TierQualification row."""

    def _make(memberId, tierId, consecutiveMonths=1, isPermanent=False, lastPeriodId=None):
        qualification = TierQualification(
            memberID=memberId,
            tierID=tierId,
            consecutiveMonths=consecutiveMonths,
            isPermanent=isPermanent,
            lastPeriodID=lastPeriodId,
            evaluatedAt=TEST_NOW
        )
        session.add(qualification)
        session.commit()
        return qualification

    return _make


@pytest.fixture
def captured_events():
    """Subscribe a recorder to the given events; returns (subscribe, events)."""
    events = []

    def _subscribe(*eventNames):
        for eventName in eventNames:
            def recorder(data, _name=eventName):
                events.append((_name, data))
            recorder.__name__ = f"record_{eventName}"
            eventBus.subscribe(eventName, recorder)

    return _subscribe, events
