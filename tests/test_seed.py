from canteen import models
from canteen.security import verify_password
from canteen.seed import ADMIN_EMAIL, ADMIN_PASSWORD, CATEGORIES, MENU_ITEMS, seed


def test_seed_is_idempotent(db):
    first = seed(db)
    assert first == {"categories": len(CATEGORIES), "menu_items": len(MENU_ITEMS), "profiles": 1}
    assert seed(db) == {"categories": 0, "menu_items": 0, "profiles": 0}

    admin = db.query(models.Profile).filter(models.Profile.email == ADMIN_EMAIL).one()
    assert admin.role == "admin"
    assert verify_password(ADMIN_PASSWORD, admin.hashed_password)
    assert db.query(models.MenuItem).filter(models.MenuItem.category_id == "pizza").count() == 2
