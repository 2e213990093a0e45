"""
Seed subscription plans for gym organizations.

This script creates (or updates) the default plan catalog.
"""
import logging
from typing import List

from sqlalchemy.orm import Session

from app.database.database import SessionLocal
from app.modules.subscriptions.crud import get_plan_by_name
from app.modules.subscriptions.models import SubscriptionPlan, BillingFrequency, DurationPeriod

logger = logging.getLogger(__name__)

# Precios como strings decimales por moneda
DEFAULT_PLANS = [
    {
        "name": "Plan Gratuito",
        "description": "Un gimnasio con lo esencial para empezar",
        "price": {"PEN": "0.00", "USD": "0.00"},
        "billing_frequency": BillingFrequency.MONTHLY.value,
        "duration": 14,
        "duration_period": DurationPeriod.DAY.value,
        "max_gyms": 1,
        "max_clients_per_gym": 30,
        "max_users_per_gym": 1,
    },
    {
        "name": "Plan Básico",
        "description": "Ideal para gimnasios pequeños",
        "price": {"PEN": "99.00", "USD": "29.00"},
        "billing_frequency": BillingFrequency.MONTHLY.value,
        "duration": 1,
        "duration_period": DurationPeriod.MONTH.value,
        "max_gyms": 1,
        "max_clients_per_gym": 300,
        "max_users_per_gym": 3,
    },
    {
        "name": "Plan Premium",
        "description": "Cadenas de gimnasios con varias sedes",
        "price": {"PEN": "249.00", "USD": "69.00"},
        "billing_frequency": BillingFrequency.MONTHLY.value,
        "duration": 1,
        "duration_period": DurationPeriod.MONTH.value,
        "max_gyms": 5,
        "max_clients_per_gym": 2000,
        "max_users_per_gym": 15,
    },
]


def seed_plans(db: Session, plans_data: List[dict] = None) -> List[SubscriptionPlan]:
    """Crear o actualizar los planes por nombre. Idempotente."""
    plans = []
    try:
        for plan_data in plans_data or DEFAULT_PLANS:
            existing_plan = get_plan_by_name(db, plan_data["name"])

            if existing_plan:
                logger.info(f"Plan {plan_data['name']} already exists, updating...")
                for key, value in plan_data.items():
                    if key != "name":
                        setattr(existing_plan, key, value)
                plans.append(existing_plan)
            else:
                logger.info(f"Creating plan {plan_data['name']}...")
                plan = SubscriptionPlan(**plan_data)
                db.add(plan)
                plans.append(plan)

        db.commit()
        logger.info("All plans seeded successfully!")
        return plans

    except Exception as e:
        logger.error(f"Error seeding plans: {e}")
        db.rollback()
        raise


def main():
    """Main function."""
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting subscription plans seeding...")
    db = SessionLocal()
    try:
        seed_plans(db)
    finally:
        db.close()
    logger.info("Subscription plans seeding completed!")


if __name__ == "__main__":
    main()
