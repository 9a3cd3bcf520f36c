from sqlalchemy.orm import Session

from app.models.campaign import Campaign
from app.models.recipient import Recipient
from app.models.tenant import Agency, Client


def get_campaign(db: Session, campaign_id):
    return db.query(Campaign).filter(Campaign.id == campaign_id).first()


def get_recipient(db: Session, recipient_id):
    return db.query(Recipient).filter(Recipient.id == recipient_id).first()


def get_client(db: Session, client_id):
    return db.query(Client).filter(Client.id == client_id).first()


def get_tenant_chain(db: Session, client_id) -> tuple[Client | None, Agency | None]:
    """
    Returns (client, agency) for a client id. The agency is None when the
    client has no reseller; both are None for an unknown client.
    """
    client = get_client(db, client_id)
    if not client:
        return None, None

    agency = None
    if client.agency_id:
        agency = db.query(Agency).filter(Agency.id == client.agency_id).first()

    return client, agency
