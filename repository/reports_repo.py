from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func as sa_func
from sqlalchemy.orm import joinedload

from shared.db import Contact, Deal, Interaction, Organization, User


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = str(value).strip().lower()
    return trimmed or None


def organization_to_dict(org: Organization) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "accountManager": org.account_manager,
        "state": org.state,
        "city": org.city,
        "zipCode": org.zip_code,
        "priority": org.priority,
        "segment": org.segment,
        "createdAt": _iso(org.created_at),
        "updatedAt": _iso(org.updated_at),
    }


def _location(org: Optional[Organization]) -> Optional[dict]:
    if org is None:
        return None
    return {
        "id": org.id,
        "name": org.name,
        "accountManager": org.account_manager,
        "state": org.state,
        "city": org.city,
        "zipCode": org.zip_code,
    }


def contact_to_dict(contact: Contact) -> dict:
    return {
        "id": contact.id,
        "organizationId": contact.organization_id,
        "firstName": contact.first_name,
        "lastName": contact.last_name,
        "email": contact.email,
        "createdAt": _iso(contact.created_at),
        "updatedAt": _iso(contact.updated_at),
        "organization": _location(contact.organization),
    }


def interaction_to_dict(interaction: Interaction) -> dict:
    return {
        "id": interaction.id,
        "organizationId": interaction.organization_id,
        "contactId": interaction.contact_id,
        "type": interaction.type,
        "subject": interaction.subject,
        "isCompleted": bool(interaction.is_completed),
        "followUpDate": _iso(interaction.follow_up_date),
        "createdAt": _iso(interaction.created_at),
        "updatedAt": _iso(interaction.updated_at),
        "organization": _location(interaction.organization),
    }


def deal_to_dict(deal: Deal) -> dict:
    return {
        "id": deal.id,
        "organizationId": deal.organization_id,
        "name": deal.name,
        "stage": deal.stage,
        "status": deal.status,
        "amount": deal.amount,
        "probability": deal.probability,
        "expectedClosingDate": _iso(deal.expected_closing_date),
        "createdAt": _iso(deal.created_at),
        "updatedAt": _iso(deal.updated_at),
        "organization": _location(deal.organization),
    }


def user_territory(user: User) -> List[str]:
    raw = user.territory_json or []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [str(area).strip() for area in raw if area is not None and str(area).strip()]


def find_user_by_email(db, email: str) -> Optional[User]:
    normalized = _normalize_email(email)
    if not normalized:
        return None
    return (
        db.query(User)
        .filter(sa_func.lower(sa_func.trim(User.email)) == normalized)
        .order_by(User.id.asc())
        .first()
    )


def fetch_organizations(db, account_manager: Optional[str] = None) -> List[dict]:
    query = db.query(Organization)
    if account_manager:
        query = query.filter(Organization.account_manager == account_manager)
    return [organization_to_dict(org) for org in query.order_by(Organization.id.asc()).all()]


def fetch_contacts(db, organization_ids: Optional[List[int]] = None) -> List[dict]:
    query = db.query(Contact).options(joinedload(Contact.organization))
    if organization_ids is not None:
        query = query.filter(Contact.organization_id.in_(organization_ids))
    return [contact_to_dict(contact) for contact in query.order_by(Contact.id.asc()).all()]


def fetch_interactions(
    db,
    *,
    since: Optional[datetime] = None,
    organization_ids: Optional[List[int]] = None,
) -> List[dict]:
    query = db.query(Interaction).options(joinedload(Interaction.organization))
    if since is not None:
        # Stored timestamps are naive UTC.
        query = query.filter(Interaction.created_at >= since.replace(tzinfo=None))
    if organization_ids is not None:
        query = query.filter(Interaction.organization_id.in_(organization_ids))
    return [interaction_to_dict(item) for item in query.order_by(Interaction.id.asc()).all()]


def fetch_deals(db, organization_ids: Optional[List[int]] = None) -> List[dict]:
    query = db.query(Deal).options(joinedload(Deal.organization))
    if organization_ids is not None:
        query = query.filter(Deal.organization_id.in_(organization_ids))
    return [deal_to_dict(deal) for deal in query.order_by(Deal.id.asc()).all()]


def fetch_dashboard_records(db, since: datetime) -> Dict[str, List[dict]]:
    """Everything the executive dashboard needs; interactions from `since` onward."""
    return {
        "organizations": fetch_organizations(db),
        "contacts": fetch_contacts(db),
        "interactions": fetch_interactions(db, since=since),
        "deals": fetch_deals(db),
    }


def fetch_territory_records(
    db,
    *,
    account_manager: Optional[str] = None,
    since: Optional[datetime] = None,
) -> Dict[str, List[dict]]:
    organizations = fetch_organizations(db, account_manager)
    org_ids = [org["id"] for org in organizations]
    if not org_ids:
        return {"organizations": [], "interactions": [], "deals": []}
    return {
        "organizations": organizations,
        "interactions": fetch_interactions(db, since=since, organization_ids=org_ids),
        "deals": fetch_deals(db, organization_ids=org_ids),
    }


def fetch_pipeline_deals(db, account_manager: Optional[str] = None) -> List[dict]:
    deals = fetch_deals(db)
    if account_manager:
        deals = [deal for deal in deals if (deal.get("organization") or {}).get("accountManager") == account_manager]
    return deals

