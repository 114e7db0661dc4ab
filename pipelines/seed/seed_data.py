"""
Seed data generator -- creates a realistic claims-operations dataset.

Generates, for one tenant:
  - ~12 adjusters across 3 teams
  - ~3 000 claims over the last 180 days
  - stage history, reviews, LLM usage, photos, policies, estimates and
    billing lines for those claims

The schema in ``schema.sql`` is applied first (idempotent), then the
tenant's existing rows are removed and regenerated.
Run:  python -m pipelines.seed.seed_data
"""
from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from faker import Faker
from sqlalchemy import create_engine, text

from src.core.config import get_settings

_SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

fake = Faker()
Faker.seed(42)
random.seed(42)

# ── Tunables ─────────────────────────────────────────────
CLIENT_NAME = "Acme Mutual"
CLIENT_SLUG = "acme-mutual"
NUM_ADJUSTERS = 12
NUM_CLAIMS = 3_000
HISTORY_DAYS = 180

TEAMS = ["Property", "Auto", "Catastrophe"]
PERILS = ["wind", "hail", "water", "fire", "theft", "collision"]
REGIONS = ["Northeast", "Southeast", "Midwest", "Southwest", "West"]
STATE_CODES = ["NY", "FL", "TX", "IL", "CA", "GA", "CO", "OH"]
SEVERITIES = ["low", "medium", "high", "critical"]
SEVERITY_WEIGHTS = [0.45, 0.35, 0.15, 0.05]
STATUSES = ["open", "in_progress", "review", "closed"]
STATUS_WEIGHTS = [0.15, 0.20, 0.10, 0.55]
STAGES = ["intake", "triage", "inspection", "estimate", "review", "payment"]
ISSUE_TYPES = ["missing_docs", "coverage_question", "estimate_dispute", "duplicate", "fraud_flag"]
CAT_CODES = ["CAT-24A", "CAT-24B", None, None, None]
MODELS = ["gpt-4o", "gpt-4o-mini", "claude-3-5-sonnet"]
REVIEW_TYPES = ["initial", "re_review", "quality_audit"]
OUTCOMES = ["approved", "adjusted", "denied"]
AREAS = ["roof", "kitchen", "basement", "exterior", "bathroom", "garage"]
DAMAGE_TYPES = ["water", "structural", "cosmetic", "electrical", "smoke"]
POLICY_TYPES = ["HO-3", "HO-5", "DP-3", "Auto"]
COVERAGE_TYPES = ["dwelling", "contents", "liability", "comprehensive"]
ENDORSEMENTS = ["water_backup", "ordinance_law", "equipment_breakdown", "service_line"]
BILLING_TYPES = ["inspection_fee", "contractor", "legal", "appraisal"]
EXPENSE_CATEGORIES = ["field", "desk", "litigation"]


def _rand_ts(now: datetime) -> datetime:
    return now - timedelta(
        days=random.randint(0, HISTORY_DAYS),
        hours=random.randint(0, 23),
        minutes=random.randint(0, 59),
    )


# ── Generators ───────────────────────────────────────────

def gen_adjusters(client_id: str) -> list[dict]:
    return [
        {
            "id": str(uuid.uuid4()),
            "client_id": client_id,
            "full_name": fake.name(),
            "email": fake.email(),
            "team": TEAMS[i % len(TEAMS)],
            "active": True,
        }
        for i in range(NUM_ADJUSTERS)
    ]


def gen_claims(client_id: str, adjusters: list[dict], now: datetime) -> list[dict]:
    rows = []
    for n in range(1, NUM_CLAIMS + 1):
        fnol = _rand_ts(now)
        status = random.choices(STATUSES, weights=STATUS_WEIGHTS, k=1)[0]
        first_touch = fnol + timedelta(hours=random.uniform(0.5, 72))
        closed = fnol + timedelta(days=random.uniform(3, 60)) if status == "closed" else None
        if closed and closed > now:
            closed = now
        sla_target = random.choice([14, 21, 30])
        elapsed = ((closed or now) - fnol).days
        issues = random.sample(ISSUE_TYPES, k=random.choices([0, 1, 2], weights=[0.7, 0.2, 0.1])[0])
        reserve = round(random.uniform(1_000, 80_000), 2)
        rows.append({
            "id": str(uuid.uuid4()),
            "client_id": client_id,
            "claim_number": f"CLM-{n:06d}",
            "claimant_name": fake.name(),
            "peril": random.choice(PERILS),
            "severity": random.choices(SEVERITIES, weights=SEVERITY_WEIGHTS, k=1)[0],
            "region": random.choice(REGIONS),
            "state_code": random.choice(STATE_CODES),
            "cat_code": random.choice(CAT_CODES),
            "status": status,
            "current_stage": "payment" if status == "closed" else random.choice(STAGES[:-1]),
            "assigned_adjuster_id": random.choice(adjusters)["id"] if random.random() > 0.05 else None,
            "fnol_date": fnol,
            "first_touch_at": first_touch if first_touch < now else None,
            "closed_at": closed,
            "reserve_amount": reserve,
            "paid_amount": round(reserve * random.uniform(0.4, 1.1), 2) if closed else None,
            "sla_target_days": sla_target,
            "sla_breached": elapsed > sla_target,
            "has_issues": bool(issues),
            "issue_types": issues,
            "reopen_count": random.choices([0, 1, 2], weights=[0.9, 0.08, 0.02])[0],
        })
    return rows


def gen_claim_children(claims: list[dict], adjusters: list[dict]) -> dict[str, list[dict]]:
    """Per-claim detail rows, keyed by table name."""
    tables: dict[str, list[dict]] = {
        "claim_stage_history": [],
        "claim_reviews": [],
        "claim_llm_usage": [],
        "claim_photos": [],
        "claim_policies": [],
        "claim_estimates": [],
        "claim_billing": [],
    }
    for c in claims:
        cid = c["id"]
        entered = c["fnol_date"]
        reached = STAGES[: STAGES.index(c["current_stage"]) + 1]
        for stage in reached:
            dwell = round(random.uniform(0.2, 8.0), 2)
            tables["claim_stage_history"].append({
                "claim_id": cid,
                "stage": stage,
                "entered_at": entered,
                "exited_at": entered + timedelta(days=dwell),
                "adjuster_id": c["assigned_adjuster_id"],
                "dwell_days": dwell,
            })
            entered += timedelta(days=dwell)

            model = random.choice(MODELS)
            tables["claim_llm_usage"].append({
                "claim_id": cid,
                "model": model,
                "stage": stage,
                "input_tokens": random.randint(800, 6_000),
                "output_tokens": random.randint(100, 1_500),
                "cost_usd": round(random.uniform(0.002, 0.09), 4),
                "latency_ms": random.randint(300, 9_000),
                "called_at": entered,
            })

        for _ in range(random.choices([1, 2, 3], weights=[0.7, 0.2, 0.1])[0]):
            tables["claim_reviews"].append({
                "claim_id": cid,
                "review_type": random.choice(REVIEW_TYPES),
                "reviewer_id": random.choice(adjusters)["id"],
                "outcome": random.choice(OUTCOMES),
                "llm_decision": random.choice(OUTCOMES),
                "human_override": random.random() < 0.12,
                "reviewed_at": c["fnol_date"] + timedelta(days=random.uniform(1, 20)),
            })

        for _ in range(random.randint(0, 8)):
            tables["claim_photos"].append({
                "claim_id": cid,
                "area_documented": random.choice(AREAS),
                "damage_type": random.choice(DAMAGE_TYPES),
                "damage_severity": random.choice(SEVERITIES),
            })

        rcv = round(c["reserve_amount"] * random.uniform(1.0, 1.6), 2)
        tables["claim_policies"].append({
            "claim_id": cid,
            "policy_type": random.choice(POLICY_TYPES),
            "coverage_type": random.choice(COVERAGE_TYPES),
            "endorsements": random.sample(ENDORSEMENTS, k=random.randint(0, 3)),
            "roof_replacement_included": random.random() < 0.4,
            "replacement_cost_value": rcv,
            "actual_cash_value": round(rcv * random.uniform(0.55, 0.95), 2),
            "deductible": random.choice([500, 1_000, 2_500, 5_000]),
        })

        for rev in range(1, random.randint(1, 4) + 1):
            estimate = round(c["reserve_amount"] * random.uniform(0.7, 1.3), 2)
            tables["claim_estimates"].append({
                "claim_id": cid,
                "estimate_amount": estimate,
                "replacement_cost": round(estimate * 1.2, 2),
                "depreciation_amount": round(estimate * random.uniform(0.05, 0.3), 2),
                "revision_number": rev,
            })

        for _ in range(random.randint(0, 3)):
            tables["claim_billing"].append({
                "claim_id": cid,
                "amount": round(random.uniform(75, 6_000), 2),
                "billing_type": random.choice(BILLING_TYPES),
                "expense_category": random.choice(EXPENSE_CATEGORIES),
                "vendor_name": fake.company(),
                "description": fake.sentence(nb_words=6),
            })
    return tables


# ── Bulk insert helper ───────────────────────────────────

def _bulk_insert(engine, table: str, rows: list[dict], batch_size: int = 2000):
    """Insert rows into *table* in batches using executemany-style VALUES."""
    if not rows:
        return
    cols = list(rows[0].keys())
    col_list = ", ".join(cols)
    param_list = ", ".join(f":{c}" for c in cols)
    sql = text(f"INSERT INTO {table} ({col_list}) VALUES ({param_list})")
    with engine.begin() as conn:
        for i in range(0, len(rows), batch_size):
            conn.execute(sql, rows[i : i + batch_size])
    print(f"  ✓ {table}: {len(rows):,} rows")


def apply_schema(engine) -> None:
    with engine.begin() as conn:
        conn.exec_driver_sql(_SCHEMA_PATH.read_text())


def upsert_client(engine) -> str:
    """Return the seed client's id, creating the client (and clearing its data)."""
    with engine.begin() as conn:
        client_id = conn.execute(
            text("SELECT id FROM clients WHERE slug = :slug"), {"slug": CLIENT_SLUG}
        ).scalar()
        if client_id is None:
            client_id = conn.execute(
                text("INSERT INTO clients (name, slug) VALUES (:name, :slug) RETURNING id"),
                {"name": CLIENT_NAME, "slug": CLIENT_SLUG},
            ).scalar()
        else:
            # child tables cascade from claims
            conn.execute(text("DELETE FROM claims WHERE client_id = :cid"), {"cid": client_id})
            conn.execute(text("DELETE FROM adjusters WHERE client_id = :cid"), {"cid": client_id})
    return str(client_id)


# ── Main ─────────────────────────────────────────────────

def main():
    print("═══ Claims Seed Data Generator ═══")
    engine = create_engine(get_settings().database_url, echo=False)

    print("Applying schema …")
    apply_schema(engine)
    client_id = upsert_client(engine)

    print("Generating data …")
    now = datetime.now(timezone.utc)
    adjusters = gen_adjusters(client_id)
    claims = gen_claims(client_id, adjusters, now)
    children = gen_claim_children(claims, adjusters)

    print("Inserting …")
    _bulk_insert(engine, "adjusters", adjusters)
    _bulk_insert(engine, "claims", claims)
    for table, rows in children.items():
        _bulk_insert(engine, table, rows)

    print(f"\nDone — seeded client {CLIENT_SLUG} ({client_id}) with "
          f"{len(adjusters):,} adjusters and {len(claims):,} claims.")


if __name__ == "__main__":
    main()
