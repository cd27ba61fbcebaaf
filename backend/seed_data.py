"""
Seed data for Momentum.
Seeds a demo company with an admin login and a handful of customers.
Carts, save attempts and signals are created through the app.
"""

import logging
from sqlalchemy.orm import Session

from models import Company, Customer, User
from routes.auth import get_password_hash

logger = logging.getLogger(__name__)


DEMO_COMPANY = {"name": "Demo Store", "code": "DEMO"}

USERS = [
    {"username": "admin", "password": "admin123", "role": "admin", "name": "Store Admin"},
    {"username": "manager", "password": "manager123", "role": "manager", "name": "Retention Manager"},
]

CUSTOMERS = [
    {"first_name": "Ava", "last_name": "Lopez", "email": "ava@example.com", "phone": "+15550100001"},
    {"first_name": "Ben", "last_name": "Okafor", "email": "ben@example.com", "phone": None},
    {"first_name": "Chen", "last_name": "Wei", "email": None, "phone": "+15550100003"},
]

def seed_database(db: Session) -> Company:
    company = Company(**DEMO_COMPANY)
    db.add(company)
    db.flush()

    for u in USERS:
        db.add(User(
            username=u["username"],
            password_hash=get_password_hash(u["password"]),
            role=u["role"],
            name=u["name"],
            company_id=company.id,
        ))

    for c in CUSTOMERS:
        db.add(Customer(company_id=company.id, **c))

    db.commit()
    logger.info(f"Seeded company {company.code} with {len(USERS)} users and {len(CUSTOMERS)} customers")
    return company
