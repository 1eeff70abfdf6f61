import os
import tempfile

# must be set before canteen.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="canteen-static-"))
os.environ["KAFKA_BOOTSTRAP_SERVERS"] = ""

import pytest  # noqa: E402

from canteen import models  # noqa: E402
from canteen.cart.engine import CartEngine  # noqa: E402
from canteen.cart.line_items import LineItem  # noqa: E402
from canteen.cart.local_store import LocalCartStore  # noqa: E402
from canteen.cart.remote_store import RemoteStore  # noqa: E402
from canteen.database import Base, SessionLocal, engine  # noqa: E402
from canteen.identity import Session, SessionContext  # noqa: E402
from canteen.local_cache import LocalCache  # noqa: E402
from canteen.security import create_access_token  # noqa: E402

PRICES = {"p1": 10.0, "p2": 4.5}


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def menu(db):
    db.add(models.Category(id="main", name="Main Course"))
    db.add(models.Category(id="drinks", name="Drinks"))
    db.flush()
    db.add(models.MenuItem(id="p1", name="Paneer Wrap", description="Grilled paneer in a wrap",
                           price=PRICES["p1"], category_id="main", is_vegetarian=True))
    db.add(models.MenuItem(id="p2", name="Masala Chai", description="Spiced tea",
                           price=PRICES["p2"], category_id="drinks"))
    db.commit()
    return PRICES


@pytest.fixture
def cache(tmp_path):
    return LocalCache(str(tmp_path / "local_storage.json"))


@pytest.fixture
def context(cache):
    return SessionContext(cache)


@pytest.fixture
def remote():
    return RemoteStore()


@pytest.fixture
def cart(context, cache, remote):
    engine_ = CartEngine(context, LocalCartStore(cache), remote)
    yield engine_
    engine_.close()


def make_line(item_id="p1", quantity=1, **kwargs) -> LineItem:
    names = {"p1": "Paneer Wrap", "p2": "Masala Chai"}
    return LineItem(id=item_id, name=names.get(item_id, item_id), price=PRICES.get(item_id, 1.0),
                    quantity=quantity, **kwargs)


def make_session(user_id="u1", role="customer") -> Session:
    return Session(user_id=user_id, email=f"{user_id}@example.com", access_token="token", role=role)


def auth_headers(user_id="u1", role="customer") -> dict:
    token = create_access_token({"sub": f"{user_id}@example.com", "id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}
