"""
Seed script: creates an administradora with default approval levels, one
condominium managed by it, and the condominium's approver profiles.
Run from the project root: python -m scripts.seed
"""
import asyncio
import sys
import os
import uuid
from decimal import Decimal

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from tiered_approvals.database import get_session_factory
from tiered_approvals.models.client import Client
from tiered_approvals.models.profile import Profile
from tiered_approvals.models.approval_level import ApprovalLevel
from tiered_approvals.services.auth_service import create_access_token

# ---------- Fixed UUIDs ----------

CLIENT_ADMINISTRADORA_ID = uuid.UUID("c0000000-0000-0000-0000-000000000001")
CLIENT_CONDOMINIO_ID = uuid.UUID("c0000000-0000-0000-0000-000000000002")

PROFILE_ADMIN_ID = uuid.UUID("a0000000-0000-0000-0000-000000000001")
PROFILE_SINDICO_ID = uuid.UUID("a0000000-0000-0000-0000-000000000002")
PROFILE_SUBSINDICO_ID = uuid.UUID("a0000000-0000-0000-0000-000000000003")
PROFILE_CONSELHO_ID = uuid.UUID("a0000000-0000-0000-0000-000000000004")

# (name, min, max, order)
DEFAULT_LEVELS = [
    ("Level 1 - Routine", Decimal("0"), Decimal("1000.00"), 1),
    ("Level 2 - Board", Decimal("1000.01"), Decimal("10000.00"), 2),
    ("Level 3 - Assembly", Decimal("10000.01"), None, 3),
]


async def seed():
    async with get_session_factory()() as db:
        result = await db.execute(select(Client).where(Client.id == CLIENT_ADMINISTRADORA_ID))
        if result.scalar_one_or_none():
            print("Seed data already exists. Skipping.")
            return

        # --- Clients ---
        db.add(Client(
            id=CLIENT_ADMINISTRADORA_ID, name="Prime Administradora",
            kind="administradora", status="ACTIVE",
        ))
        await db.flush()
        db.add(Client(
            id=CLIENT_CONDOMINIO_ID, name="Residencial Jardim",
            kind="condominio", parent_client_id=CLIENT_ADMINISTRADORA_ID, status="ACTIVE",
        ))
        await db.flush()

        # --- Profiles ---
        profiles = [
            Profile(id=PROFILE_ADMIN_ID, client_id=CLIENT_ADMINISTRADORA_ID,
                    name="Paula Prime", email="admin@prime.example.com", role="administradora"),
            Profile(id=PROFILE_SINDICO_ID, client_id=CLIENT_CONDOMINIO_ID,
                    name="Carlos Lima", email="sindico@jardim.example.com", role="admin_cliente"),
            Profile(id=PROFILE_SUBSINDICO_ID, client_id=CLIENT_CONDOMINIO_ID,
                    name=None, email="subsindico@jardim.example.com", role="manager"),
            Profile(id=PROFILE_CONSELHO_ID, client_id=CLIENT_CONDOMINIO_ID,
                    name="Beatriz Souza", email="conselho@jardim.example.com", role="collaborator"),
        ]
        db.add_all(profiles)
        await db.flush()

        # --- Default levels on the administradora ---
        db.add_all([
            ApprovalLevel(
                client_id=CLIENT_ADMINISTRADORA_ID, name=name, amount_threshold=low,
                max_amount_threshold=high, order_level=order, approvers=[], active=True,
            )
            for name, low, high, order in DEFAULT_LEVELS
        ])

        await db.commit()
        print("Seed data inserted successfully!")
        print("  Clients: 2 (administradora + condominio)")
        print(f"  Profiles: {len(profiles)}")
        print(f"  Default approval levels: {len(DEFAULT_LEVELS)}")
        token = create_access_token(
            user_id=str(PROFILE_ADMIN_ID),
            tenant_id=str(CLIENT_ADMINISTRADORA_ID),
            role="administradora",
            email="admin@prime.example.com",
        )
        print(f"  Administradora token: {token}")


if __name__ == "__main__":
    asyncio.run(seed())
