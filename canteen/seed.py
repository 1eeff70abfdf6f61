"""Demo catalogue and admin account.

Run ``python -m canteen.seed`` against an empty database. Rows that already
exist (same id, or same admin email) are left alone, so re-running is safe.
"""

import logging

from sqlalchemy.orm import Session

from canteen import config, models
from canteen.database import SessionLocal, init_db
from canteen.security import get_password_hash

logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@canteen.local"
ADMIN_PASSWORD = "Admin@123"

CATEGORIES = [
    {"id": "pizza", "name": "Pizza"},
    {"id": "coffee", "name": "Coffee"},
    {"id": "salads", "name": "Salads"},
    {"id": "desserts", "name": "Desserts"},
    {"id": "meat", "name": "Meat"},
    {"id": "sandwiches", "name": "Sandwiches"},
    {"id": "soups", "name": "Soups"},
    {"id": "icecream", "name": "Ice Cream"},
    {"id": "fruits", "name": "Fruits"},
    {"id": "drinks", "name": "Drinks"},
]

MENU_ITEMS = [
    {
        "id": "pizza-1",
        "name": "Margherita Pizza",
        "description": "Classic pizza with tomato sauce, mozzarella, and basil",
        "price": 12.99,
        "image_url": "https://images.unsplash.com/photo-1604382354936-07c5d9983bd3?w=500&q=80",
        "category_id": "pizza",
        "is_vegetarian": True,
    },
    {
        "id": "pizza-2",
        "name": "Pepperoni Pizza",
        "description": "Traditional pizza topped with pepperoni slices",
        "price": 14.99,
        "image_url": "https://images.unsplash.com/photo-1628840042765-356cda07504e?w=500&q=80",
        "category_id": "pizza",
        "is_spicy": True,
    },
    {
        "id": "coffee-1",
        "name": "Cappuccino",
        "description": "Espresso with steamed milk and foam",
        "price": 4.5,
        "image_url": "https://images.unsplash.com/photo-1572442388796-11668a67e53d?w=500&q=80",
        "category_id": "coffee",
        "is_vegetarian": True,
        "is_gluten_free": True,
    },
    {
        "id": "salad-1",
        "name": "Caesar Salad",
        "description": "Romaine lettuce, croutons, parmesan cheese with Caesar dressing",
        "price": 8.99,
        "image_url": "https://images.unsplash.com/photo-1550304943-4f24f54ddde9?w=500&q=80",
        "category_id": "salads",
        "is_vegetarian": True,
    },
]


def seed(db: Session) -> dict:
    """Insert the demo rows that are missing and return how many were added per table."""
    added = {"categories": 0, "menu_items": 0, "profiles": 0}

    for c in CATEGORIES:
        if not db.query(models.Category).filter(models.Category.id == c["id"]).first():
            db.add(models.Category(**c))
            added["categories"] += 1
    db.flush()

    for item in MENU_ITEMS:
        if not db.query(models.MenuItem).filter(models.MenuItem.id == item["id"]).first():
            db.add(models.MenuItem(**item))
            added["menu_items"] += 1

    if not db.query(models.Profile).filter(models.Profile.email == ADMIN_EMAIL).first():
        db.add(models.Profile(
            email=ADMIN_EMAIL,
            name="Canteen Admin",
            hashed_password=get_password_hash(ADMIN_PASSWORD),
            role="admin",
            email_confirmed=True,
        ))
        added["profiles"] += 1

    db.commit()
    return added


def main():
    config.setup_logging()
    init_db()
    db = SessionLocal()
    try:
        added = seed(db)
    finally:
        db.close()
    logger.info("Seeded %d categories, %d menu items, %d profiles",
                added["categories"], added["menu_items"], added["profiles"])
    logger.info("Admin login: %s / %s", ADMIN_EMAIL, ADMIN_PASSWORD)


if __name__ == "__main__":
    main()
