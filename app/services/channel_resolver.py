"""
Outbound messaging account resolution.

The fallback chain is walked in order: client -> agency -> platform ->
legacy_env. ``resolve`` is a pure function over immutable snapshots read at
resolution time; the health fields of ``messaging_accounts`` are only touched by
``record_send_failure`` / ``record_send_success`` (atomic UPDATEs, no
read-modify-write) and by the explicit operator actions at the bottom.

Stale validation (``last_validated_at`` older than VALIDATION_STALE_DAYS) is a
warning flag, the level stays available. ``validated=False`` is a hard gate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app import config
from app.models.messaging_account import MessagingAccount
from app.services.activity_logger import log_activity
from app.services.tenant_service import get_tenant_chain


logger = logging.getLogger(__name__)

LEVELS = ("client", "agency", "platform", "legacy_env")

REASON_AVAILABLE = "available"
REASON_NOT_CONFIGURED = "not_configured"
REASON_DISABLED = "disabled"
REASON_NOT_VALIDATED = "not_validated"
REASON_CIRCUIT_OPEN = "circuit_open"
REASON_OVER_LIMIT = "over_limit"


@dataclass(frozen=True)
class AccountSnapshot:
    level: str
    name: str
    account_id: object = None
    entity_id: object = None
    configured: bool = False
    enabled: bool = False
    validated: bool = False
    last_validated_at: datetime | None = None
    circuit_open_until: datetime | None = None
    monthly_usage_limit: int | None = None
    current_month_usage: int = 0
    usage_month: str | None = None
    credentials_ref: str | None = None
    from_address: str | None = None


@dataclass(frozen=True)
class FallbackChainItem:
    level: str
    name: str
    available: bool
    reason: str
    needs_revalidation: bool = False
    account_id: object = None

    def as_dict(self) -> dict:
        return {
            "level": self.level,
            "name": self.name,
            "available": self.available,
            "reason": self.reason,
            "needsRevalidation": self.needs_revalidation,
            "accountId": str(self.account_id) if self.account_id else None,
        }


@dataclass(frozen=True)
class ActiveAccount:
    level: str
    name: str
    account_id: object
    entity_id: object
    credentials_ref: str
    from_address: str
    reason: str
    needs_revalidation: bool = False


@dataclass
class ChannelResolution:
    channel: str
    active: ActiveAccount | None
    fallback_chain: list[FallbackChainItem] = field(default_factory=list)

    @property
    def fallback_occurred(self) -> bool:
        if self.active is None:
            return True
        return bool(self.fallback_chain) and self.fallback_chain[0].level != self.active.level

    def as_dict(self) -> dict:
        return {
            "channel": self.channel,
            "success": self.active is not None,
            "activeLevel": self.active.level if self.active else None,
            "activeAccountId": str(self.active.account_id) if self.active and self.active.account_id else None,
            "fallbackOccurred": self.fallback_occurred,
            "fallbackChain": [item.as_dict() for item in self.fallback_chain],
        }


class NoChannelAvailable(Exception):
    def __init__(self, resolution: ChannelResolution):
        reasons = ", ".join(f"{i.level}={i.reason}" for i in resolution.fallback_chain)
        super().__init__(f"no {resolution.channel} account available ({reasons})")
        self.resolution = resolution


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _month_key(now: datetime) -> str:
    return f"{now.year:04d}-{now.month:02d}"


# ============================================================
# PURE RESOLUTION
# ============================================================
def assess_level(snapshot: AccountSnapshot, now: datetime) -> str:
    if not snapshot.configured:
        return REASON_NOT_CONFIGURED
    if not snapshot.enabled:
        return REASON_DISABLED
    if not snapshot.validated:
        return REASON_NOT_VALIDATED
    if snapshot.circuit_open_until is not None and snapshot.circuit_open_until > now:
        return REASON_CIRCUIT_OPEN

    if snapshot.monthly_usage_limit is not None:
        usage = snapshot.current_month_usage if snapshot.usage_month == _month_key(now) else 0
        if usage >= snapshot.monthly_usage_limit:
            return REASON_OVER_LIMIT

    return REASON_AVAILABLE


def needs_revalidation(snapshot: AccountSnapshot, now: datetime, stale_after: timedelta) -> bool:
    if not snapshot.configured or not snapshot.validated:
        return False
    if snapshot.last_validated_at is None:
        return True
    return now - snapshot.last_validated_at > stale_after


def resolve(
    chain: list[AccountSnapshot],
    *,
    channel: str = "sms",
    now: datetime | None = None,
    stale_after: timedelta | None = None,
) -> ChannelResolution:
    if now is None:
        now = _utcnow()
    if stale_after is None:
        stale_after = timedelta(days=config.VALIDATION_STALE_DAYS)

    trace: list[FallbackChainItem] = []
    active = None

    for snapshot in chain:
        reason = assess_level(snapshot, now)
        stale = needs_revalidation(snapshot, now, stale_after)
        available = reason == REASON_AVAILABLE

        trace.append(
            FallbackChainItem(
                level=snapshot.level,
                name=snapshot.name,
                available=available,
                reason=reason,
                needs_revalidation=stale,
                account_id=snapshot.account_id,
            )
        )

        if available and active is None:
            active = ActiveAccount(
                level=snapshot.level,
                name=snapshot.name,
                account_id=snapshot.account_id,
                entity_id=snapshot.entity_id,
                credentials_ref=snapshot.credentials_ref,
                from_address=snapshot.from_address,
                reason=reason,
                needs_revalidation=stale,
            )

    return ChannelResolution(channel=channel, active=active, fallback_chain=trace)


# ============================================================
# SNAPSHOTS
# ============================================================
def snapshot_account(level: str, account: MessagingAccount | None, default_name: str) -> AccountSnapshot:
    if account is None:
        return AccountSnapshot(level=level, name=default_name)

    return AccountSnapshot(
        level=level,
        name=account.friendly_name or default_name,
        account_id=account.id,
        entity_id=account.entity_id,
        configured=account.configured,
        enabled=bool(account.enabled),
        validated=bool(account.validated),
        last_validated_at=account.last_validated_at,
        circuit_open_until=account.circuit_open_until,
        monthly_usage_limit=account.monthly_usage_limit,
        current_month_usage=account.current_month_usage or 0,
        usage_month=account.usage_month,
        credentials_ref=account.credentials_ref,
        from_address=account.from_address,
    )


def legacy_env_snapshot(channel: str, now: datetime) -> AccountSnapshot:
    ref = config.LEGACY_MESSAGING_CREDENTIALS_REF
    from_address = config.LEGACY_MESSAGING_FROM_ADDRESS
    # the environment account is an SMS number only
    configured = channel == "sms" and bool(ref and from_address)
    return AccountSnapshot(
        level="legacy_env",
        name="Environment fallback",
        configured=configured,
        enabled=configured,
        validated=configured,
        last_validated_at=now if configured else None,
        credentials_ref=ref if configured else None,
        from_address=from_address if configured else None,
    )


def _find_account(db: Session, *, level: str, entity_id, channel: str) -> MessagingAccount | None:
    q = (
        db.query(MessagingAccount)
        .populate_existing()
        .filter(MessagingAccount.level == level)
        .filter(MessagingAccount.channel == channel)
    )
    if entity_id is None:
        q = q.filter(MessagingAccount.entity_id.is_(None))
    else:
        q = q.filter(MessagingAccount.entity_id == entity_id)
    return q.first()


def load_tenant_chain(db: Session, client_id, channel: str = "sms", *, now: datetime | None = None) -> list[AccountSnapshot]:
    if now is None:
        now = _utcnow()

    client, agency = get_tenant_chain(db, client_id)

    chain = []

    client_account = None
    if client:
        client_account = _find_account(db, level="client", entity_id=client.id, channel=channel)
    chain.append(snapshot_account("client", client_account, client.name if client else "Unknown client"))

    agency_account = None
    if agency:
        agency_account = _find_account(db, level="agency", entity_id=agency.id, channel=channel)
    chain.append(snapshot_account("agency", agency_account, agency.name if agency else "No agency"))

    platform_account = _find_account(db, level="platform", entity_id=None, channel=channel)
    chain.append(snapshot_account("platform", platform_account, "Platform Master"))

    chain.append(legacy_env_snapshot(channel, now))
    return chain


def resolve_channel(
    db: Session,
    client_id,
    channel: str = "sms",
    *,
    now: datetime | None = None,
    recipient_id=None,
    campaign_id=None,
    delivery_record_id=None,
    audit: bool = True,
) -> ChannelResolution:
    if now is None:
        now = _utcnow()

    chain = load_tenant_chain(db, client_id, channel, now=now)
    resolution = resolve(chain, channel=channel, now=now)

    if resolution.active:
        logger.info(
            "messaging account resolved",
            extra={
                "client_id": str(client_id),
                "channel": channel,
                "level": resolution.active.level,
                "fallback_occurred": resolution.fallback_occurred,
                "needs_revalidation": resolution.active.needs_revalidation,
            },
        )
    else:
        logger.error(
            "no messaging account available",
            extra={"client_id": str(client_id), "channel": channel, "chain": resolution.as_dict()["fallbackChain"]},
        )

    if audit:
        log_activity(
            db,
            category="communication",
            event_type="channel_resolved" if resolution.active else "channel_unavailable",
            status="success" if resolution.active else "failed",
            severity="warning" if resolution.fallback_occurred else "info",
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            delivery_record_id=delivery_record_id,
            details={"clientId": client_id, **resolution.as_dict()},
        )

    return resolution


def require_channel(db: Session, client_id, channel: str = "sms", **kwargs) -> ActiveAccount:
    resolution = resolve_channel(db, client_id, channel, **kwargs)
    if resolution.active is None:
        raise NoChannelAvailable(resolution)
    return resolution.active


# ============================================================
# HEALTH BOOKKEEPING
# ============================================================
def record_send_failure(db: Session, account: ActiveAccount, error: str, *, now: datetime | None = None) -> bool:
    """
    Counts a failed send against the account. Returns True when this failure
    opened the circuit.
    """
    if account.account_id is None:
        return False
    if now is None:
        now = _utcnow()

    db.execute(
        update(MessagingAccount)
        .where(MessagingAccount.id == account.account_id)
        .values(
            failure_count=MessagingAccount.failure_count + 1,
            last_error=(error or "")[:2000],
            last_error_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    opened = db.execute(
        update(MessagingAccount)
        .where(MessagingAccount.id == account.account_id)
        .where(MessagingAccount.failure_count >= config.CIRCUIT_BREAKER_THRESHOLD)
        .where((MessagingAccount.circuit_open_until.is_(None)) | (MessagingAccount.circuit_open_until <= now))
        .values(circuit_open_until=now + timedelta(seconds=config.CIRCUIT_BREAKER_COOLDOWN_SECONDS))
        .execution_options(synchronize_session=False)
    ).rowcount

    if opened:
        logger.warning(
            "messaging circuit opened",
            extra={
                "account_id": str(account.account_id),
                "level": account.level,
                "cooldown_seconds": config.CIRCUIT_BREAKER_COOLDOWN_SECONDS,
            },
        )
        log_activity(
            db,
            category="communication",
            event_type="circuit_opened",
            status="failed",
            severity="error",
            details={"accountId": account.account_id, "level": account.level, "lastError": error},
        )

    return bool(opened)


def record_send_success(db: Session, account: ActiveAccount, *, now: datetime | None = None) -> None:
    if account.account_id is None:
        return
    if now is None:
        now = _utcnow()

    month = _month_key(now)
    db.execute(
        update(MessagingAccount)
        .where(MessagingAccount.id == account.account_id)
        .values(
            failure_count=0,
            circuit_open_until=None,
            current_month_usage=case(
                (MessagingAccount.usage_month == month, MessagingAccount.current_month_usage + 1),
                else_=1,
            ),
            usage_month=month,
        )
        .execution_options(synchronize_session=False)
    )


# ============================================================
# OPERATOR ACTIONS
# ============================================================
def reset_circuit(db: Session, account_id) -> bool:
    return bool(
        db.execute(
            update(MessagingAccount)
            .where(MessagingAccount.id == account_id)
            .values(failure_count=0, circuit_open_until=None)
            .execution_options(synchronize_session=False)
        ).rowcount
    )


def invalidate_account(db: Session, account_id, error: str | None = None, *, now: datetime | None = None) -> bool:
    if now is None:
        now = _utcnow()

    values = {"validated": False}
    if error:
        values["last_error"] = error[:2000]
        values["last_error_at"] = now

    return bool(
        db.execute(
            update(MessagingAccount)
            .where(MessagingAccount.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
    )


def mark_validated(db: Session, account_id, *, now: datetime | None = None) -> bool:
    if now is None:
        now = _utcnow()
    return bool(
        db.execute(
            update(MessagingAccount)
            .where(MessagingAccount.id == account_id)
            .values(validated=True, last_validated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
    )
