# tests/test_qualification.py
"""
Tests for TierQualificationService: advancement one tier per period,
maintenance, permanence, downgrades, stats failures and the sweep.
"""
import threading
import time
from decimal import Decimal

import pytest

from config import Config
from models import Commission, Member, TierChange, TierQualification
from network_engine.config.tiers import reset_tier_table_cache
from network_engine.repository import MemberRepository
from network_engine.services.qualification_service import TierQualificationService
from network_engine.services.stats_provider import StatsProvider
from network_engine.exceptions import MemberNotFoundError, StatsUnavailableError
from network_engine.events.event_bus import EngineEvents


class BlockingRepository(MemberRepository):
    """Repository whose snapshot lookup for the given members hangs until released."""

    def __init__(self, session, release, blockedIds=None):
        super().__init__(session)
        self.release = release
        self.blockedIds = blockedIds

    def getPeriodStats(self, memberId, periodId):
        if self.blockedIds is None or memberId in self.blockedIds:
            self.release.wait(timeout=5)
            return None
        return super().getPeriodStats(memberId, periodId)


def blocking_provider(release, timeout=0.05, blockedIds=None):
    """statsProviderFactory building StatsProviders over BlockingRepository."""

    def _factory(sessionFactory):
        return StatsProvider(
            sessionFactory,
            timeout=timeout,
            repositoryFactory=lambda session: BlockingRepository(session, release, blockedIds)
        )

    return _factory


def current_qualification(session, memberId):
    return MemberRepository(session).getCurrentQualification(memberId)


# =============================================================================
# TEST CLASS: Advancement
# =============================================================================

class TestTierAdvancement:

    @pytest.mark.asyncio
    async def test_not_qualified_to_entry_tier(self, session, make_member, make_snapshot):
        make_member(2)
        make_snapshot(2, "2025-01", teamVolume=0)

        result = await TierQualificationService(session).evaluate(2, "2025-01")

        assert result.action == "advanced"
        assert result.previousTier is None
        assert result.newTier == "bronze"
        assert result.achievementBonus is None
        assert session.get(Member, 2).tierID == "bronze"

        qualification = current_qualification(session, 2)
        assert qualification.tierID == "bronze"
        assert qualification.consecutiveMonths == 1
        assert qualification.lastPeriodID == "2025-01"

    @pytest.mark.asyncio
    async def test_bronze_to_silver_pays_achievement_bonus(self, session, make_member, make_snapshot,
                                                           make_referrals, make_qualification):
        make_member(2, tierId="bronze")
        make_qualification(2, "bronze", lastPeriodId="2024-12")
        make_referrals(2, 3, firstId=100)
        make_snapshot(2, "2025-01", teamVolume=6000)

        result = await TierQualificationService(session).evaluate(2, "2025-01")

        assert result.action == "advanced"
        assert result.newTier == "silver"
        assert Decimal(str(result.achievementBonus.amount)) == Decimal("500")
        assert result.achievementBonus.commissionType == Commission.TYPE_ACHIEVEMENT
        assert result.achievementBonus.sourceTransactionID == "period:2025-01:achievement_bonus:silver"

        change = session.query(TierChange).filter_by(memberID=2).one()
        assert (change.previousTier, change.newTier, change.reason) == ("bronze", "silver", "advanced")
        assert change.activeReferrals == 3

        # The bronze row is superseded, not deleted
        rows = session.query(TierQualification).filter_by(memberID=2).order_by(
            TierQualification.qualificationID
        ).all()
        assert [row.tierID for row in rows] == ["bronze", "silver"]
        assert rows[0].supersededAt is not None
        assert rows[1].supersededAt is None

    @pytest.mark.asyncio
    async def test_advances_one_tier_per_period(self, session, make_member, make_snapshot, make_referrals,
                                                make_qualification):
        """Meeting gold from bronze only reaches silver this period."""
        make_member(2, tierId="bronze")
        make_qualification(2, "bronze", lastPeriodId="2024-12")
        make_referrals(2, 10, firstId=100)
        make_snapshot(2, "2025-01", teamVolume=20000)
        make_snapshot(2, "2025-02", teamVolume=20000)

        first = await TierQualificationService(session).evaluate(2, "2025-01")
        second = await TierQualificationService(session).evaluate(2, "2025-02")

        assert first.newTier == "silver"
        assert second.newTier == "gold"
        assert Decimal(str(second.achievementBonus.amount)) == Decimal("2000")

    @pytest.mark.asyncio
    async def test_advancement_event(self, session, make_member, make_snapshot, captured_events):
        subscribe, events = captured_events
        subscribe(EngineEvents.TIER_CHANGED)
        make_member(2)
        make_snapshot(2, "2025-01")

        await TierQualificationService(session).evaluate(2, "2025-01")

        assert events == [(EngineEvents.TIER_CHANGED, {
            "memberId": 2,
            "periodId": "2025-01",
            "previousTier": None,
            "newTier": "bronze",
            "reason": "advanced",
            "isPermanent": False,
        })]


# =============================================================================
# TEST CLASS: Maintenance and permanence
# =============================================================================

class TestTierPermanence:

    @pytest.mark.asyncio
    async def test_maintain_until_permanent_then_held(self, session, make_member, make_snapshot,
                                                      make_referrals, make_qualification):
        make_member(2, tierId="silver")
        make_qualification(2, "silver", consecutiveMonths=1, lastPeriodId="2024-12")
        make_referrals(2, 3, firstId=100)
        make_snapshot(2, "2025-01", teamVolume=6000)
        make_snapshot(2, "2025-02", teamVolume=6000)
        make_snapshot(2, "2025-03", teamVolume=0)

        service = TierQualificationService(session)
        january = await service.evaluate(2, "2025-01")
        february = await service.evaluate(2, "2025-02")
        march = await service.evaluate(2, "2025-03")

        assert (january.action, january.consecutiveMonths) == ("maintained", 2)
        assert (february.action, february.consecutiveMonths) == ("permanent", 3)
        assert february.isPermanent is True

        assert march.action == "held"
        assert march.newTier == "silver"
        assert march.consecutiveMonths == 3
        assert session.get(Member, 2).tierID == "silver"

        reasons = [change.reason for change in session.query(TierChange).filter_by(memberID=2)]
        assert reasons == ["permanent"]

    @pytest.mark.asyncio
    async def test_threshold_configurable(self, session, make_member, make_snapshot, make_qualification):
        Config.set(Config.PERMANENCE_THRESHOLD_MONTHS, 2)
        make_member(2, tierId="bronze")
        make_qualification(2, "bronze", consecutiveMonths=1, lastPeriodId="2024-12")
        make_snapshot(2, "2025-01")

        result = await TierQualificationService(session).evaluate(2, "2025-01")

        assert result.action == "permanent"
        assert current_qualification(session, 2).isPermanent is True

    @pytest.mark.asyncio
    async def test_permanent_can_still_advance(self, session, make_member, make_snapshot, make_referrals,
                                               make_qualification):
        make_member(2, tierId="bronze")
        make_qualification(2, "bronze", consecutiveMonths=5, isPermanent=True, lastPeriodId="2024-12")
        make_referrals(2, 3, firstId=100)
        make_snapshot(2, "2025-01", teamVolume=6000)

        result = await TierQualificationService(session).evaluate(2, "2025-01")

        assert result.action == "advanced"
        assert result.newTier == "silver"
        assert current_qualification(session, 2).isPermanent is False


# =============================================================================
# TEST CLASS: Downgrades
# =============================================================================

class TestTierDowngrade:

    @pytest.mark.asyncio
    async def test_downgrade_several_tiers(self, session, make_member, make_snapshot, make_qualification):
        make_member(2, tierId="gold")
        make_qualification(2, "gold", consecutiveMonths=1, lastPeriodId="2024-12")
        make_snapshot(2, "2025-01", teamVolume=100)

        result = await TierQualificationService(session).evaluate(2, "2025-01")

        assert result.action == "downgraded"
        assert (result.previousTier, result.newTier) == ("gold", "bronze")
        assert session.get(Member, 2).tierID == "bronze"
        change = session.query(TierChange).filter_by(memberID=2).one()
        assert change.reason == "downgraded"

    @pytest.mark.asyncio
    async def test_downgrade_to_not_qualified(self, session, make_member, make_snapshot, make_qualification):
        Config.set(Config.TIER_CONFIG, {
            "starter": {"order": 1, "levelRates": [10], "minReferrals": 1},
            "pro": {"order": 2, "levelRates": [10, 5], "tierMultiplier": "1.2", "minReferrals": 5},
        })
        reset_tier_table_cache()
        make_member(2, tierId="starter")
        make_qualification(2, "starter", lastPeriodId="2024-12")
        make_snapshot(2, "2025-01")

        service = TierQualificationService(session)
        result = await service.evaluate(2, "2025-01")

        assert result.action == "downgraded"
        assert result.newTier is None
        assert session.get(Member, 2).tierID is None
        assert current_qualification(session, 2) is None

        # The TierChange marks the period as evaluated
        again = await service.evaluate(2, "2025-01")
        assert again.action == "already_evaluated"

    @pytest.mark.asyncio
    async def test_not_qualified_stays_unchanged(self, session, make_member, make_snapshot):
        Config.set(Config.TIER_CONFIG, {
            "starter": {"order": 1, "levelRates": [10], "minReferrals": 1},
        })
        reset_tier_table_cache()
        make_member(2)
        make_snapshot(2, "2025-01")

        result = await TierQualificationService(session).evaluate(2, "2025-01")

        assert result.action == "unchanged"
        assert result.changed is False


# =============================================================================
# TEST CLASS: Idempotency and stats failures
# =============================================================================

class TestEvaluationSafety:

    @pytest.mark.asyncio
    async def test_same_period_evaluated_once(self, session, make_member, make_snapshot, make_qualification):
        make_member(2, tierId="bronze")
        make_qualification(2, "bronze", consecutiveMonths=1, lastPeriodId="2024-12")
        make_snapshot(2, "2025-01")
        service = TierQualificationService(session)

        first = await service.evaluate(2, "2025-01")
        second = await service.evaluate(2, "2025-01")

        assert first.action == "maintained"
        assert second.action == "already_evaluated"
        assert current_qualification(session, 2).consecutiveMonths == 2

    @pytest.mark.asyncio
    async def test_unknown_member(self, session):
        with pytest.raises(MemberNotFoundError):
            await TierQualificationService(session).evaluate(404, "2025-01")

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, session, make_member):
        make_member(2, tierId="silver")

        with pytest.raises(StatsUnavailableError):
            await TierQualificationService(session).evaluate(2, "2025-01")

        assert session.get(Member, 2).tierID == "silver"

    @pytest.mark.asyncio
    async def test_corrupt_snapshot(self, session, make_member, make_snapshot):
        make_member(2, tierId="silver")
        make_snapshot(2, "2025-01", teamVolume=-5)

        with pytest.raises(StatsUnavailableError) as exc_info:
            await TierQualificationService(session).evaluate(2, "2025-01")

        assert exc_info.value.memberId == 2
        assert session.query(TierChange).count() == 0

    @pytest.mark.asyncio
    async def test_stats_timeout(self, session, make_member, make_snapshot):
        make_member(2, tierId="silver")
        make_snapshot(2, "2025-01")
        release = threading.Event()

        service = TierQualificationService(session, statsProviderFactory=blocking_provider(release))
        try:
            with pytest.raises(StatsUnavailableError):
                await service.evaluate(2, "2025-01")
        finally:
            release.set()

        session.expire_all()
        assert session.get(Member, 2).tierID == "silver"
        assert session.query(TierChange).count() == 0

    @pytest.mark.asyncio
    async def test_blocking_lookup_bounded_by_timeout(self, session, make_member, make_snapshot):
        make_member(2, tierId="silver")
        make_snapshot(2, "2025-01")
        release = threading.Event()
        provider = blocking_provider(release)(None)

        started = time.monotonic()
        try:
            with pytest.raises(StatsUnavailableError) as exc_info:
                await provider.getStats(2, "2025-01")
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 1
        assert exc_info.value.memberId == 2
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_stats_read_on_own_session(self, session, make_member, make_snapshot, make_referrals):
        make_member(2, tierId="silver")
        make_snapshot(2, "2025-01", teamVolume="1234.50")
        make_referrals(2, 3, firstId=100)
        make_referrals(2, 1, firstId=200, status="inactive")

        stats = await StatsProvider(timeout=1).getStats(2, "2025-01")

        assert stats.teamVolume == Decimal("1234.50")
        assert stats.activeReferrals == 3


# =============================================================================
# TEST CLASS: Sweep
# =============================================================================

class TestTierSweep:

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_sweep(self, session, make_member, make_snapshot):
        Config.set(Config.SWEEP_WORKERS, 1)
        make_member(2)
        make_snapshot(2, "2025-01")
        make_member(3)  # no snapshot
        make_member(4, tierId="platinum")
        make_snapshot(4, "2025-01")

        result = await TierQualificationService(session).runTierEvaluationSweep("2025-01")

        assert result["evaluated"] == 1
        assert result["advanced"] == 1
        assert result["skipped"] == 1
        assert result["errors"] == 1
        assert sorted(failure["memberId"] for failure in result["failedMembers"]) == [3, 4]

        session.expire_all()
        assert session.get(Member, 2).tierID == "bronze"

    @pytest.mark.asyncio
    async def test_concurrent_sweep(self, session, make_member, make_snapshot):
        for memberId in range(2, 12):
            make_member(memberId)
            make_snapshot(memberId, "2025-01")

        result = await TierQualificationService(session).runTierEvaluationSweep("2025-01")

        assert result["advanced"] == 10
        session.expire_all()
        assert session.query(Member).filter_by(tierID="bronze").count() == 10

    @pytest.mark.asyncio
    async def test_timed_out_member_skipped(self, session, make_member, make_snapshot):
        for memberId in (2, 3, 4):
            make_member(memberId)
            make_snapshot(memberId, "2025-01")
        release = threading.Event()

        service = TierQualificationService(
            session,
            statsProviderFactory=blocking_provider(release, timeout=0.5, blockedIds={3})
        )
        try:
            result = await service.runTierEvaluationSweep("2025-01")
        finally:
            release.set()

        assert result["advanced"] == 2
        assert result["skipped"] == 1
        assert [failure["memberId"] for failure in result["failedMembers"]] == [3]

        session.expire_all()
        assert session.get(Member, 3).tierID is None
        assert session.get(Member, 4).tierID == "bronze"
