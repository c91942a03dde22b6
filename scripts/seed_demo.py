#!/usr/bin/env python3
"""CLI script to seed the CRM with demo data.

Usage:
    python scripts/seed_demo.py
    python scripts/seed_demo.py --company "Acme Corp" --won 2 --lost 1

Connects directly to the database using DATABASE_URL from environment or .env file.
Creates tables if needed, then inserts one company with contacts, tags and
projects spread across the pipeline stages.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal

# Ensure project root is on sys.path so we can import src.crm
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def seed(company_name: str, won: int, lost: int) -> None:
    """Insert demo records through the repository."""
    from src.crm.core.database import close_db, get_session, init_db
    from src.crm.deals.repository import CrmRepository
    from src.crm.deals.schemas import (
        CompanyCreate,
        ContactCreate,
        ProjectCreate,
        ProjectStageMove,
        TagCreate,
    )
    from src.crm.deals.stages import OPEN_STAGES, Stage

    await init_db()
    repo = CrmRepository(session_factory=get_session)
    now = datetime.now(timezone.utc)

    company = await repo.create_company(
        CompanyCreate(name=company_name, email="sales@example.com", phone="+1 555 0100")
    )
    print(f"Company: {company.name} (id={company.id})")

    alice = await repo.create_contact(
        ContactCreate(company_id=company.id, name="Alice Johnson", title="CTO", email="alice@example.com")
    )
    bob = await repo.create_contact(
        ContactCreate(company_id=company.id, name="Bob Smith", title="Procurement")
    )

    # Tag names are unique, so reuse tags left by an earlier run
    existing = {t.name: t for t in await repo.list_tags()}
    tags = {}
    for name, color in (("Hot", "#EF4444"), ("Enterprise", "#3B82F6")):
        tags[name] = existing.get(name) or await repo.create_tag(TagCreate(name=name, color=color))

    for position, stage in enumerate(OPEN_STAGES):
        project = await repo.create_project(
            ProjectCreate(
                company_id=company.id,
                name=f"{company_name} {stage.value.title()} deal",
                value=Decimal(5000 * (position + 1)),
                stage=stage,
                position=position,
                contact_ids=[alice.id] if position % 2 == 0 else [alice.id, bob.id],
                tag_ids=[tags["Enterprise"].id],
            ),
            now=now,
        )
        print(f"  Project: {project.name} [{project.stage.value}] {project.value}")

    for label, count, stage in (("Won", won, Stage.WON), ("Lost", lost, Stage.LOST)):
        for i in range(count):
            project = await repo.create_project(
                ProjectCreate(
                    company_id=company.id,
                    name=f"{company_name} {label} deal {i + 1}",
                    value=Decimal("12500.00"),
                    tag_ids=[tags["Hot"].id],
                ),
                now=now,
            )
            project = await repo.move_project(
                project.id, ProjectStageMove(stage=stage, position=i), now=now
            )
            print(f"  Project: {project.name} [{project.stage.value}] {project.value}")

    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the CRM with demo data")
    parser.add_argument("--company", default="Acme Corp", help="Demo company name")
    parser.add_argument("--won", type=int, default=2, help="Number of won deals to create")
    parser.add_argument("--lost", type=int, default=1, help="Number of lost deals to create")
    args = parser.parse_args()

    if args.won < 0 or args.lost < 0:
        parser.error("--won and --lost must be non-negative")

    asyncio.run(seed(args.company, args.won, args.lost))


if __name__ == "__main__":
    main()
