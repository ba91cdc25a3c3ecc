#!/usr/bin/env python3
"""Typed event schemas for the trade finance and treasury facets.

Every on-chain event the engine tracks is an ``EventType`` enum member paired
with a frozen payload dataclass. Payload classes declare which of their fields
name participants (used by the relevance filter) and which identify the
application records they touch (used for cache invalidation).
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from web3.types import HexBytes


class TradeEventType(str, Enum):
    """Events emitted by the TradeFinanceFacet."""
    PGA_CREATED = "PGACreated"
    PGA_VOTE_CAST = "PGAVoteCast"
    PGA_STATUS_CHANGED = "PGAStatusChanged"
    GUARANTEE_APPROVED = "GuaranteeApproved"
    SELLER_APPROVAL_RECEIVED = "SellerApprovalReceived"
    COLLATERAL_PAID = "CollateralPaid"
    GOODS_SHIPPED = "GoodsShipped"
    BALANCE_PAYMENT_RECEIVED = "BalancePaymentReceived"
    CERTIFICATE_ISSUED = "CertificateIssued"
    DELIVERY_AGREEMENT_CREATED = "DeliveryAgreementCreated"
    BUYER_CONSENT_GIVEN = "BuyerConsentGiven"
    PGA_COMPLETED = "PGACompleted"


class TreasuryEventType(str, Enum):
    """Events emitted by the staking, governance and financier facets."""
    STAKED = "Staked"
    UNSTAKED = "Unstaked"
    REWARDS_CLAIMED = "RewardsClaimed"
    REWARDS_DISTRIBUTED = "RewardsDistributed"
    FINANCIER_STATUS_CHANGED = "FinancierStatusChanged"
    CUSTOM_DEADLINE_SET = "CustomDeadlineSet"
    EMERGENCY_WITHDRAWN = "EmergencyWithdrawn"
    REWARD_RATE_UPDATED = "RewardRateUpdated"
    STAKING_CONFIG_UPDATED = "StakingConfigUpdated"
    PROPOSAL_CREATED = "ProposalCreated"
    PROPOSAL_VOTE_CAST = "ProposalVoteCast"
    PROPOSAL_STATUS_CHANGED = "ProposalStatusChanged"
    PROPOSAL_EXECUTED = "ProposalExecuted"
    FINANCIER_REVOCATION_REQUESTED = "FinancierRevocationRequested"
    FINANCIER_REVOCATION_CANCELLED = "FinancierRevocationCancelled"
    FINANCIER_REVOCATION_COMPLETED = "FinancierRevocationCompleted"


EventType = TradeEventType | TreasuryEventType


@dataclass(frozen=True, slots=True)
class EventPayload:
    """Base class for variant-specific event fields."""

    participant_fields: ClassVar[tuple[str, ...]] = ()
    # (record kind, field holding its key); a None field means a singleton record
    record_fields: ClassVar[tuple[tuple[str, str | None], ...]] = ()

    def participants(self) -> tuple[str, ...]:
        """Addresses directly involved in the event."""
        return tuple(
            value for name in self.participant_fields
            if (value := getattr(self, name, None))
        )

    def record_ids(self) -> tuple[str, ...]:
        """Identifiers of the application records this event changes."""
        ids: list[str] = []
        for kind, name in self.record_fields:
            if name is None:
                ids.append(kind)
            elif value := getattr(self, name, None):
                ids.append(f"{kind}:{str(value).lower()}")
        return tuple(ids)


# --- Trade finance payloads -------------------------------------------------

@dataclass(frozen=True, slots=True)
class PGACreated(EventPayload):
    pga_id: str
    buyer: str
    seller: str
    trade_value: int
    guarantee_amount: int
    collateral_amount: int
    duration: int
    metadata_uri: str
    voting_deadline: int
    created_at: int

    participant_fields = ("buyer", "seller")
    record_fields = (("pga", "pga_id"), ("pgas", "buyer"), ("pgas", "seller"))


@dataclass(frozen=True, slots=True)
class PGAVoteCast(EventPayload):
    pga_id: str
    voter: str
    support: bool
    voting_power: int
    timestamp: int

    participant_fields = ("voter",)
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class PGAStatusChanged(EventPayload):
    pga_id: str
    old_status: int
    new_status: int
    timestamp: int

    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class GuaranteeApproved(EventPayload):
    pga_id: str
    buyer: str
    seller: str
    company_name: str
    registration_number: str
    trade_description: str
    trade_value: int
    guarantee_amount: int
    duration: int
    beneficiary_name: str
    beneficiary_wallet: str
    timestamp: int

    participant_fields = ("buyer", "seller")
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class SellerApprovalReceived(EventPayload):
    pga_id: str
    seller: str
    timestamp: int

    participant_fields = ("seller",)
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class CollateralPaid(EventPayload):
    pga_id: str
    buyer: str
    collateral_amount: int
    timestamp: int

    participant_fields = ("buyer",)
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class GoodsShipped(EventPayload):
    pga_id: str
    logistic_partner: str
    logistic_partner_name: str
    timestamp: int

    participant_fields = ("logistic_partner",)
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class BalancePaymentReceived(EventPayload):
    pga_id: str
    buyer: str
    balance_amount: int
    timestamp: int

    participant_fields = ("buyer",)
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class CertificateIssued(EventPayload):
    pga_id: str
    certificate_number: str
    issue_date: int
    buyer: str
    seller: str
    trade_value: int
    guarantee_amount: int
    validity_days: int
    blockchain_network: str
    smart_contract: str

    participant_fields = ("buyer", "seller")
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class DeliveryAgreementCreated(EventPayload):
    agreement_id: str
    pga_id: str
    delivery_person: str
    buyer: str
    created_at: int
    deadline: int
    delivery_notes: str

    participant_fields = ("delivery_person", "buyer")
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class BuyerConsentGiven(EventPayload):
    agreement_id: str
    pga_id: str
    buyer: str
    timestamp: int

    participant_fields = ("buyer",)
    record_fields = (("pga", "pga_id"),)


@dataclass(frozen=True, slots=True)
class PGACompleted(EventPayload):
    pga_id: str
    buyer: str
    seller: str
    completed_at: int

    participant_fields = ("buyer", "seller")
    record_fields = (("pga", "pga_id"),)


# --- Treasury payloads -------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Staked(EventPayload):
    staker: str
    amount: int
    voting_power: int
    current_apr: int
    deadline: int
    is_financier: bool

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class Unstaked(EventPayload):
    staker: str
    amount: int
    rewards: int

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class RewardsClaimed(EventPayload):
    staker: str
    amount: int

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class RewardsDistributed(EventPayload):
    staker: str
    amount: int

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class FinancierStatusChanged(EventPayload):
    staker: str
    is_financier: bool

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class CustomDeadlineSet(EventPayload):
    staker: str
    deadline: int

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class EmergencyWithdrawn(EventPayload):
    staker: str
    amount: int
    penalty: int

    participant_fields = ("staker",)
    record_fields = (("stake", "staker"),)


@dataclass(frozen=True, slots=True)
class RewardRateUpdated(EventPayload):
    old_rate: int
    new_rate: int
    total_staked: int

    record_fields = (("config", None),)


@dataclass(frozen=True, slots=True)
class StakingConfigUpdated(EventPayload):
    parameter: str
    old_value: int
    new_value: int

    record_fields = (("config", None),)


@dataclass(frozen=True, slots=True)
class ProposalCreated(EventPayload):
    proposal_id: str
    category: str
    title: str
    proposer: str
    voting_deadline: int

    participant_fields = ("proposer",)
    record_fields = (("proposal", "proposal_id"),)


@dataclass(frozen=True, slots=True)
class ProposalVoteCast(EventPayload):
    proposal_id: str
    voter: str
    support: bool
    voting_power: int

    participant_fields = ("voter",)
    record_fields = (("proposal", "proposal_id"),)


@dataclass(frozen=True, slots=True)
class ProposalStatusChanged(EventPayload):
    proposal_id: str
    new_status: int

    record_fields = (("proposal", "proposal_id"),)


@dataclass(frozen=True, slots=True)
class ProposalExecuted(EventPayload):
    proposal_id: str
    executor: str

    participant_fields = ("executor",)
    record_fields = (("proposal", "proposal_id"),)


@dataclass(frozen=True, slots=True)
class FinancierRevocationRequested(EventPayload):
    financier: str
    request_time: int

    participant_fields = ("financier",)
    record_fields = (("stake", "financier"),)


@dataclass(frozen=True, slots=True)
class FinancierRevocationCancelled(EventPayload):
    financier: str
    request_time: int

    participant_fields = ("financier",)
    record_fields = (("stake", "financier"),)


@dataclass(frozen=True, slots=True)
class FinancierRevocationCompleted(EventPayload):
    financier: str
    completion_time: int

    participant_fields = ("financier",)
    record_fields = (("stake", "financier"),)


_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])([A-Z])')


def abi_name_to_field(name: str) -> str:
    """Convert an ABI argument name (``metadataURI``) to a field name (``metadata_uri``)."""
    return _CAMEL_BOUNDARY.sub(r'_\1', name).lower()


def normalize_arg(value: Any) -> Any:
    """Normalize decoded ABI values for storage in payload dataclasses.

    Indexed dynamic types (e.g. ``string indexed pgaId``) arrive as the 32-byte
    keccak topic, so byte values are rendered as 0x-prefixed hex.
    """
    if isinstance(value, (bytes, bytearray, HexBytes)):
        return '0x' + bytes(value).hex()
    return value


@dataclass(frozen=True, slots=True)
class EventSchema:
    """Everything the engine needs to know about one domain's events.

    Attributes:
        domain: Domain name used for namespacing state ("trade", "treasury")
        contract_name: ABI file under ``contracts/`` declaring the events
        payload_types: Event type to payload class, one entry per tracked event
        broadcast_types: Events delivered to every user regardless of participation
    """

    domain: str
    contract_name: str
    payload_types: Mapping[EventType, type[EventPayload]]
    broadcast_types: frozenset[EventType] = field(default_factory=frozenset)

    @property
    def event_types(self) -> tuple[EventType, ...]:
        return tuple(self.payload_types)

    def build_payload(self, event_type: EventType, args: Mapping[str, Any]) -> EventPayload:
        """Build the typed payload for decoded event arguments.

        Raises:
            KeyError: If the event type is not tracked by this schema
            TypeError: If the arguments do not match the payload's fields
        """
        payload_cls = self.payload_types[event_type]
        values = {abi_name_to_field(name): normalize_arg(value) for name, value in args.items()}
        return payload_cls(**values)

    def is_broadcast(self, event_type: EventType) -> bool:
        return event_type in self.broadcast_types


TRADE_SCHEMA = EventSchema(
    domain="trade",
    contract_name="TradeFinanceFacet",
    payload_types={
        TradeEventType.PGA_CREATED: PGACreated,
        TradeEventType.PGA_VOTE_CAST: PGAVoteCast,
        TradeEventType.PGA_STATUS_CHANGED: PGAStatusChanged,
        TradeEventType.GUARANTEE_APPROVED: GuaranteeApproved,
        TradeEventType.SELLER_APPROVAL_RECEIVED: SellerApprovalReceived,
        TradeEventType.COLLATERAL_PAID: CollateralPaid,
        TradeEventType.GOODS_SHIPPED: GoodsShipped,
        TradeEventType.BALANCE_PAYMENT_RECEIVED: BalancePaymentReceived,
        TradeEventType.CERTIFICATE_ISSUED: CertificateIssued,
        TradeEventType.DELIVERY_AGREEMENT_CREATED: DeliveryAgreementCreated,
        TradeEventType.BUYER_CONSENT_GIVEN: BuyerConsentGiven,
        TradeEventType.PGA_COMPLETED: PGACompleted,
    },
    # Financiers vote on guarantees they are not party to; consumers re-filter by role
    broadcast_types=frozenset({
        TradeEventType.PGA_CREATED,
        TradeEventType.GUARANTEE_APPROVED,
        TradeEventType.PGA_VOTE_CAST,
        TradeEventType.PGA_STATUS_CHANGED,
    }),
)

TREASURY_SCHEMA = EventSchema(
    domain="treasury",
    contract_name="TreasuryFacet",
    payload_types={
        TreasuryEventType.STAKED: Staked,
        TreasuryEventType.UNSTAKED: Unstaked,
        TreasuryEventType.REWARDS_CLAIMED: RewardsClaimed,
        TreasuryEventType.REWARDS_DISTRIBUTED: RewardsDistributed,
        TreasuryEventType.FINANCIER_STATUS_CHANGED: FinancierStatusChanged,
        TreasuryEventType.CUSTOM_DEADLINE_SET: CustomDeadlineSet,
        TreasuryEventType.EMERGENCY_WITHDRAWN: EmergencyWithdrawn,
        TreasuryEventType.REWARD_RATE_UPDATED: RewardRateUpdated,
        TreasuryEventType.STAKING_CONFIG_UPDATED: StakingConfigUpdated,
        TreasuryEventType.PROPOSAL_CREATED: ProposalCreated,
        TreasuryEventType.PROPOSAL_VOTE_CAST: ProposalVoteCast,
        TreasuryEventType.PROPOSAL_STATUS_CHANGED: ProposalStatusChanged,
        TreasuryEventType.PROPOSAL_EXECUTED: ProposalExecuted,
        TreasuryEventType.FINANCIER_REVOCATION_REQUESTED: FinancierRevocationRequested,
        TreasuryEventType.FINANCIER_REVOCATION_CANCELLED: FinancierRevocationCancelled,
        TreasuryEventType.FINANCIER_REVOCATION_COMPLETED: FinancierRevocationCompleted,
    },
    # Every staker votes on proposals, so the governance feed is shared
    broadcast_types=frozenset({
        TreasuryEventType.PROPOSAL_CREATED,
        TreasuryEventType.PROPOSAL_VOTE_CAST,
        TreasuryEventType.PROPOSAL_STATUS_CHANGED,
    }),
)

SCHEMAS: dict[str, EventSchema] = {
    TRADE_SCHEMA.domain: TRADE_SCHEMA,
    TREASURY_SCHEMA.domain: TREASURY_SCHEMA,
}
