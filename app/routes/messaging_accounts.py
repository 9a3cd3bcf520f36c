from datetime import datetime, timezone
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.db import get_db
from app.deps.tenant import get_active_client
from app.models.messaging_account import MessagingAccount
from app.schemas.messaging_account import MessagingAccountInvalidate, MessagingAccountOut, MessagingAccountUpsert
from app.services.channel_resolver import invalidate_account, reset_circuit, resolve_channel
from app.services.tenant_service import get_tenant_chain


router = APIRouter(prefix="/messaging-accounts", tags=["messaging-accounts"])


def _tenant_chain(db: Session, client_id: UUID):
    client, agency = get_tenant_chain(db, client_id)
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client, agency


def _visible_filter(client, agency):
    clauses = [
        (MessagingAccount.level == "client") & (MessagingAccount.entity_id == client.id),
        MessagingAccount.level == "platform",
    ]
    if agency:
        clauses.append((MessagingAccount.level == "agency") & (MessagingAccount.entity_id == agency.id))
    return or_(*clauses)


def _account_for_client(db: Session, account_id: UUID, client_id: UUID) -> MessagingAccount:
    client, agency = _tenant_chain(db, client_id)
    account = (
        db.query(MessagingAccount)
        .filter(MessagingAccount.id == account_id)
        .filter(_visible_filter(client, agency))
        .first()
    )
    if not account:
        raise HTTPException(status_code=404, detail="Messaging account not found")
    return account


@router.get("", response_model=list[MessagingAccountOut])
def list_accounts(
    channel: Literal["sms", "email"] | None = None,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    client, agency = _tenant_chain(db, active_client)
    q = db.query(MessagingAccount).filter(_visible_filter(client, agency))
    if channel:
        q = q.filter(MessagingAccount.channel == channel)
    return q.order_by(MessagingAccount.level.asc(), MessagingAccount.channel.asc()).all()


@router.put("", response_model=MessagingAccountOut)
def upsert_account(
    payload: MessagingAccountUpsert,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    client, agency = _tenant_chain(db, active_client)

    if payload.level == "client":
        entity_id = client.id
    elif payload.level == "agency":
        if not agency:
            raise HTTPException(status_code=400, detail="client has no agency")
        entity_id = agency.id
    else:
        entity_id = None

    if payload.entity_id is not None and payload.entity_id != entity_id:
        raise HTTPException(status_code=400, detail="payload.entity_id does not match active client context")

    account = (
        db.query(MessagingAccount)
        .filter(MessagingAccount.level == payload.level)
        .filter(MessagingAccount.entity_id.is_(None) if entity_id is None else MessagingAccount.entity_id == entity_id)
        .filter(MessagingAccount.channel == payload.channel)
        .first()
    )
    if not account:
        account = MessagingAccount(
            level=payload.level,
            entity_id=entity_id,
            channel=payload.channel,
            enabled=payload.enabled,
            validated=False,
            failure_count=0,
            current_month_usage=0,
        )
        db.add(account)

    data = payload.model_dump(exclude_unset=True)
    for k in ("friendly_name", "credentials_ref", "from_address", "enabled", "monthly_usage_limit"):
        if k in data:
            setattr(account, k, data[k])

    if "validated" in data and data["validated"] is not None:
        account.validated = data["validated"]
        if data["validated"]:
            account.last_validated_at = datetime.now(timezone.utc).replace(tzinfo=None)

    db.commit()
    db.refresh(account)
    return account


@router.get("/resolve")
def resolve(
    channel: Literal["sms", "email"] = "sms",
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    _tenant_chain(db, active_client)
    resolution = resolve_channel(db, active_client, channel)
    db.commit()
    return resolution.as_dict()


@router.post("/{account_id}/reset-circuit", response_model=MessagingAccountOut)
def reset_account_circuit(
    account_id: UUID,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    account = _account_for_client(db, account_id, active_client)
    reset_circuit(db, account_id)
    db.commit()
    db.refresh(account)
    return account


@router.post("/{account_id}/invalidate", response_model=MessagingAccountOut)
def invalidate(
    account_id: UUID,
    payload: MessagingAccountInvalidate | None = None,
    active_client: UUID = Depends(get_active_client),
    db: Session = Depends(get_db),
):
    account = _account_for_client(db, account_id, active_client)
    invalidate_account(db, account_id, payload.error if payload else None)
    db.commit()
    db.refresh(account)
    return account
