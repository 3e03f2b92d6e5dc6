#!/usr/bin/env python3
from __future__ import annotations

import argparse
from datetime import datetime, timedelta

from reports_shared import issue_auth_session_token
from shared.db import Contact, Deal, Interaction, Organization, SessionLocal, User, init_db

DEMO_USERS = [
    {"email": "admin@example.com", "role": "admin", "territory": []},
    {"email": "manager@example.com", "role": "manager", "territory": []},
    {"email": "broker.ca@example.com", "role": "broker", "territory": ["CA", "90210"]},
    {"email": "broker.unassigned@example.com", "role": "broker", "territory": []},
]

DEMO_ORGANIZATIONS = [
    {"name": "Pacific Provisions", "account_manager": "Alice", "state": "CA", "city": "Los Angeles", "zip_code": "90012"},
    {"name": "Beverly Bistro", "account_manager": "Alice", "state": "CA", "city": "Beverly Hills", "zip_code": "90210"},
    {"name": "Lone Star Foods", "account_manager": "Bob", "state": "TX", "city": "Austin", "zip_code": "73301"},
    {"name": "Empire Catering", "account_manager": "Bob", "state": "NY", "city": "New York", "zip_code": "10001"},
]


def seed(db, now: datetime) -> dict:
    """Insert a small, repeatable CRM data set; returns row counts."""
    for entry in DEMO_USERS:
        db.add(User(email=entry["email"], role=entry["role"], territory_json=entry["territory"]))

    organizations = []
    for index, entry in enumerate(DEMO_ORGANIZATIONS):
        org = Organization(
            created_at=now - timedelta(days=200),
            updated_at=now - timedelta(days=10 + 20 * index),
            **entry,
        )
        db.add(org)
        organizations.append(org)
    db.flush()

    counts = {"users": len(DEMO_USERS), "organizations": len(organizations), "contacts": 0, "interactions": 0, "deals": 0}
    for index, org in enumerate(organizations):
        contact = Contact(organization_id=org.id, first_name="Buyer", last_name=org.name.split()[0], email=f"buyer{index}@example.com")
        db.add(contact)
        db.flush()
        counts["contacts"] += 1

        for offset in (2, 9, 40):
            db.add(
                Interaction(
                    organization_id=org.id,
                    contact_id=contact.id,
                    type="call",
                    subject=f"Check-in with {org.name}",
                    is_completed=offset != 9,
                    follow_up_date=now - timedelta(days=1) if offset == 9 else None,
                    created_at=now - timedelta(days=offset),
                )
            )
            counts["interactions"] += 1

        deals = [
            {"stage": "close", "status": "won", "amount": 40000 + 5000 * index, "probability": 100, "age": 90},
            {"stage": "follow_up", "status": "active", "amount": 30000, "probability": 80, "age": 20},
            {"stage": "contacted", "status": "lost", "amount": 12000, "probability": 10, "age": 60},
        ]
        for entry in deals:
            db.add(
                Deal(
                    organization_id=org.id,
                    name=f"{org.name} {entry['stage']}",
                    stage=entry["stage"],
                    status=entry["status"],
                    amount=entry["amount"],
                    probability=entry["probability"],
                    expected_closing_date=now + timedelta(days=5),
                    created_at=now - timedelta(days=entry["age"]),
                    updated_at=now - timedelta(days=entry["age"] // 2),
                )
            )
            counts["deals"] += 1

    db.commit()
    return counts


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo CRM data for the reporting endpoints")
    parser.add_argument("--print-tokens", action="store_true", help="Print a session token per demo user")
    args = parser.parse_args()

    init_db()
    db = SessionLocal()
    try:
        counts = seed(db, datetime.utcnow())
    finally:
        db.close()
    print(f"Seeded reporting demo data: {counts}")
    if args.print_tokens:
        for entry in DEMO_USERS:
            token, _expires = issue_auth_session_token(entry["email"], role=entry["role"])
            print(f"{entry['email']}: {token or '(set AUTH_SESSION_SECRET to issue tokens)'}")


if __name__ == "__main__":
    main()
