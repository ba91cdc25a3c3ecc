"""
Gas sponsorship quota engine.

Decides whether a transaction's gas is sponsored or paid by the user, under a
per-user and a global daily budget. Decisions are made against persisted
daily counters plus in-memory reservations for sponsored transactions that
have not been recorded yet.
"""

import dataclasses
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from .config import SponsorshipPolicy
from .models import Decision, GasUsageCounter, PaymentMethod, UsageEntry, UsageScope
from .store import KeyValueStore, get_json, set_json

if TYPE_CHECKING:
    from .price_feed import NativePriceFeed

logger = logging.getLogger(__name__)

WEI_PER_ETHER = Decimal(10) ** 18
AVERAGE_TRANSFER_COST_USD = Decimal("0.10")


def to_usd(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True, slots=True)
class DecisionContext:
    """Inputs of one decision, after daily resets and reservations."""
    user_key: str
    estimated_cost_usd: Decimal
    tx_value_usd: Decimal
    operation: str | None
    policy: SponsorshipPolicy
    user_used_usd: Decimal
    global_used_usd: Decimal
    user_reserved_usd: Decimal
    global_reserved_usd: Decimal

    @property
    def user_remaining_usd(self) -> Decimal:
        remaining = self.policy.per_user_daily_limit_usd - self.user_used_usd - self.user_reserved_usd
        return max(Decimal("0"), remaining)

    @property
    def global_remaining_usd(self) -> Decimal:
        remaining = self.policy.global_daily_limit_usd - self.global_used_usd - self.global_reserved_usd
        return max(Decimal("0"), remaining)


@dataclass(frozen=True, slots=True)
class QuotaRule:
    """A sponsorship precondition; the first failing rule decides the refusal."""
    name: str
    passes: Callable[[DecisionContext], bool]
    reason: Callable[[DecisionContext], str]


DEFAULT_RULES: tuple[QuotaRule, ...] = (
    QuotaRule(
        name="eligible_operation",
        passes=lambda ctx: ctx.operation is None or ctx.operation in ctx.policy.eligible_operations,
        reason=lambda ctx: f"operation '{ctx.operation}' not eligible for sponsorship",
    ),
    QuotaRule(
        name="value_ceiling",
        passes=lambda ctx: ctx.tx_value_usd <= ctx.policy.max_sponsored_value_usd,
        reason=lambda ctx: (
            f"transaction value (${ctx.tx_value_usd:.2f}) exceeds max sponsored value "
            f"(${ctx.policy.max_sponsored_value_usd:.2f})"
        ),
    ),
    QuotaRule(
        name="user_budget",
        passes=lambda ctx: ctx.estimated_cost_usd <= ctx.user_remaining_usd,
        reason=lambda ctx: (
            f"daily limit reached (used ${ctx.user_used_usd} of "
            f"${ctx.policy.per_user_daily_limit_usd}), resets tomorrow"
        ),
    ),
    QuotaRule(
        name="global_budget",
        passes=lambda ctx: ctx.estimated_cost_usd <= ctx.global_remaining_usd,
        reason=lambda ctx: "global daily limit reached, sponsorship temporarily unavailable",
    ),
)


class GasSponsorshipQuotaEngine:
    """Sponsorship decisions under shared daily budgets."""

    def __init__(
        self,
        store: KeyValueStore,
        policy: SponsorshipPolicy | None = None,
        clock: Callable[[], float] = time.time,
        rules: tuple[QuotaRule, ...] = DEFAULT_RULES,
    ) -> None:
        """
        Initialize the quota engine.

        Args:
            store: Persistence for the daily usage counters
            policy: Budgets and eligible operations
            clock: Time source in seconds; days roll over at UTC midnight
            rules: Ordered sponsorship preconditions
        """
        self.store = store
        self.policy = policy or SponsorshipPolicy()
        self.clock = clock
        self.rules = rules

        # (day, estimated cost) of sponsored decisions not yet recorded, oldest first
        self._reservations: dict[str, list[tuple[str, Decimal]]] = {}

    def today(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).date().isoformat()

    def update_policy(self, **changes: Any) -> SponsorshipPolicy:
        """Replace the policy; takes effect on the next decision."""
        self.policy = dataclasses.replace(self.policy, **changes)
        logger.info(f"Sponsorship policy updated: {', '.join(sorted(changes))}")
        return self.policy

    def reserved_usd(self, user_key: str | None = None) -> Decimal:
        self._expire_reservations()
        if user_key is not None:
            pending = self._reservations.get(user_key.lower(), [])
            return sum((amount for _, amount in pending), Decimal("0"))
        return sum(
            (amount for pending in self._reservations.values() for _, amount in pending),
            Decimal("0"),
        )

    def _expire_reservations(self) -> None:
        """Drop reservations from earlier days; those budgets have reset."""
        today = self.today()
        for user in list(self._reservations):
            pending = [item for item in self._reservations[user] if item[0] == today]
            stale = len(self._reservations[user]) - len(pending)
            if stale:
                logger.info(f"Dropping {stale} stale gas reservations for {user[:10]}...")
            if pending:
                self._reservations[user] = pending
            else:
                del self._reservations[user]

    async def decide(
        self,
        user_key: str,
        estimated_cost_usd: Decimal | float | str,
        tx_value_usd: Decimal | float | str,
        operation: str | None = None,
    ) -> Decision:
        """
        Decide how a transaction pays for gas.

        A sponsored decision reserves its estimated cost until the matching
        ``record_usage`` or ``release``.
        """
        user = user_key.lower()
        estimated = to_usd(estimated_cost_usd)
        tx_value = to_usd(tx_value_usd)

        user_counter = await self._counter(UsageScope.USER, user)
        global_counter = await self._counter(UsageScope.GLOBAL)

        # No awaits from here on: concurrent decisions see each other's reservations
        ctx = DecisionContext(
            user_key=user,
            estimated_cost_usd=estimated,
            tx_value_usd=tx_value,
            operation=operation,
            policy=self.policy,
            user_used_usd=user_counter.total_spent_usd,
            global_used_usd=global_counter.total_spent_usd,
            user_reserved_usd=self.reserved_usd(user),
            global_reserved_usd=self.reserved_usd(),
        )

        for rule in self.rules:
            if not rule.passes(ctx):
                reason = rule.reason(ctx)
                logger.info(f"Sponsorship refused for {user[:10]}... ({rule.name}): {reason}")
                return Decision(
                    method=PaymentMethod.TOKEN_PAY,
                    reason=reason,
                    remaining_usd=ctx.user_remaining_usd,
                    estimated_cost_usd=estimated,
                )

        self._reservations.setdefault(user, []).append((self.today(), estimated))
        remaining = ctx.user_remaining_usd - estimated
        logger.info(
            f"Sponsoring ${estimated} of gas for {user[:10]}... "
            f"(${remaining} left today)"
        )
        return Decision(
            method=PaymentMethod.SPONSORED,
            reason=None,
            remaining_usd=remaining,
            estimated_cost_usd=estimated,
        )

    async def select_payment_method(
        self,
        user_key: str,
        estimated_cost_usd: Decimal | float | str,
        tx_value_usd: Decimal | float | str,
        operation: str | None = None,
        preferred: PaymentMethod | str | None = None,
    ) -> Decision:
        """Honour an explicit token or native payment choice, otherwise ``decide``."""
        if preferred is not None:
            preferred = PaymentMethod(preferred)
        if preferred in (PaymentMethod.TOKEN_PAY, PaymentMethod.NATIVE_PAY):
            user_counter = await self._counter(UsageScope.USER, user_key.lower())
            remaining = (
                self.policy.per_user_daily_limit_usd
                - user_counter.total_spent_usd
                - self.reserved_usd(user_key)
            )
            return Decision(
                method=preferred,
                reason="user selected this payment method",
                remaining_usd=max(Decimal("0"), remaining),
                estimated_cost_usd=to_usd(estimated_cost_usd),
            )
        return await self.decide(user_key, estimated_cost_usd, tx_value_usd, operation)

    async def record_usage(
        self,
        user_key: str,
        actual_cost_usd: Decimal | float | str,
        was_sponsored: bool,
        token: str = "ETH",
    ) -> None:
        """
        Record gas actually spent.

        The user counter always grows; the global counter only grows for
        sponsored spend. Either way the user's oldest reservation is settled,
        since a sponsored decision may end up paid by the user.
        """
        user = user_key.lower()
        amount = to_usd(actual_cost_usd)
        entry = UsageEntry(timestamp=self.clock(), amount_usd=amount, token=token, sponsored=was_sponsored)

        user_counter = await self._counter(UsageScope.USER, user)
        user_counter.add(entry)
        await self._save(user_counter, user)

        if was_sponsored:
            global_counter = await self._counter(UsageScope.GLOBAL)
            global_counter.add(entry)
            await self._save(global_counter)
            if global_counter.total_spent_usd > self.policy.global_daily_limit_usd:
                logger.warning(
                    f"Global sponsored spend ${global_counter.total_spent_usd} exceeds "
                    f"limit ${self.policy.global_daily_limit_usd}"
                )
        self.release(user)

        logger.debug(
            f"Recorded ${amount} {token} gas for {user[:10]}... "
            f"({'sponsored' if was_sponsored else 'user paid'})"
        )

    def release(self, user_key: str) -> Decimal:
        """Drop the user's oldest reservation (transaction abandoned or recorded)."""
        self._expire_reservations()
        user = user_key.lower()
        pending = self._reservations.get(user)
        if not pending:
            return Decimal("0")
        _, amount = pending.pop(0)
        if not pending:
            del self._reservations[user]
        return amount

    async def usage_summary(self, user_key: str) -> dict[str, Any]:
        user = user_key.lower()
        counter = await self._counter(UsageScope.USER, user)
        limit = self.policy.per_user_daily_limit_usd
        remaining = max(Decimal("0"), limit - counter.total_spent_usd - self.reserved_usd(user))
        percent_used = min(Decimal("100"), counter.total_spent_usd / limit * 100) if limit else Decimal("100")

        return {
            'date': counter.date,
            'daily_used_usd': counter.total_spent_usd,
            'daily_limit_usd': limit,
            'remaining_usd': remaining,
            'reserved_usd': self.reserved_usd(user),
            'percent_used': percent_used,
            'sponsored_count': sum(1 for entry in counter.entries if entry.sponsored),
            'total_count': len(counter.entries),
            'estimated_free_transactions_left': int(remaining // AVERAGE_TRANSFER_COST_USD),
        }

    async def reset_user(self, user_key: str) -> None:
        """Zero a user's counter for today and drop their reservations."""
        user = user_key.lower()
        self._reservations.pop(user, None)
        await self._save(GasUsageCounter(scope=UsageScope.USER, date=self.today()), user)
        logger.info(f"Daily gas usage reset for {user[:10]}...")

    async def estimate_cost_usd(
        self,
        gas_wei: int,
        price_feed: "NativePriceFeed",
        symbol: str = "ETH",
    ) -> Decimal:
        """Convert a gas estimate in wei to USD at the native token's price."""
        price = await price_feed.get_usd_price(symbol)
        return Decimal(gas_wei) / WEI_PER_ETHER * price

    def _key(self, scope: UsageScope, user: str | None) -> str:
        return f"gas:user:{user}" if scope is UsageScope.USER else "gas:global"

    async def _counter(self, scope: UsageScope, user: str | None = None) -> GasUsageCounter:
        """Load a counter, starting a fresh one when the stored day is over."""
        today = self.today()
        data = await get_json(self.store, self._key(scope, user))
        counter = GasUsageCounter.from_dict(data) if data is not None else None

        if counter is None or counter.date != today:
            if counter is not None:
                logger.info(f"Resetting {scope.value} gas usage for {today}")
            counter = GasUsageCounter(scope=scope, date=today)
            await self._save(counter, user)
        return counter

    async def _save(self, counter: GasUsageCounter, user: str | None = None) -> None:
        await set_json(self.store, self._key(counter.scope, user), counter.to_dict())
