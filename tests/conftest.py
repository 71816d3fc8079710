import os
import tempfile

# must be set before any app module is imported (test modules import crud at collection time)
_TMP_DIR = tempfile.mkdtemp(prefix="inventory_test_")
os.environ["APP_DB_PATH"] = os.path.join(_TMP_DIR, "test_inventory.db")
os.environ["OVERDUE_SWEEP_SECONDS"] = "0"
os.environ["ALWAYS_REQUIRE_APPROVAL"] = "false"
os.environ.pop("DATABASE_URL", None)

import pytest
from fastapi.testclient import TestClient


class RecordingSink:
    def __init__(self):
        self.events = []

    def notify(self, event, transaction):
        self.events.append((event, transaction))

    def names(self):
        return [e.value for e, _ in self.events]


@pytest.fixture(scope="session")
def app_module():
    import main

    return main


@pytest.fixture()
def client(app_module):
    # route every request through the test SessionLocal
    def _get_db_override():
        db = app_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app_module.app.dependency_overrides[app_module.get_db] = _get_db_override
    with TestClient(app_module.app) as c:
        yield c
    app_module.app.dependency_overrides.clear()


@pytest.fixture()
def db_session(app_module):
    db = app_module.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def clean_db(app_module, db_session):
    # children first: notifications/penalties/extensions -> transactions -> items/users
    from sqlalchemy import delete
    from orm import ExtensionORM, GuestRequestORM, ItemORM, NotificationORM, PenaltyORM, TransactionORM, UserORM

    db_session.execute(delete(NotificationORM))
    db_session.execute(delete(GuestRequestORM))
    db_session.execute(delete(PenaltyORM))
    db_session.execute(delete(ExtensionORM))
    db_session.execute(delete(TransactionORM))
    db_session.execute(delete(ItemORM))
    db_session.execute(delete(UserORM))
    db_session.commit()
    yield


@pytest.fixture()
def recorder():
    return RecordingSink()


@pytest.fixture()
def make_user(db_session):
    import crud
    from models import UserIn

    def _make(name, role="user", **fields):
        email = fields.pop("email", f"{name.lower().replace(' ', '.')}@example.com")
        return crud.create_user(db_session, UserIn(name=name, email=email, role=role, **fields))

    return _make


@pytest.fixture()
def make_item(db_session):
    import crud
    from models import ItemIn

    def _make(name="Camera", total_quantity=5, **fields):
        fields.setdefault("category", "AV")
        return crud.create_item(db_session, ItemIn(name=name, total_quantity=total_quantity, **fields))

    return _make


@pytest.fixture()
def admin(make_user):
    return make_user("Ada Admin", role="admin")


@pytest.fixture()
def manager(make_user):
    return make_user("Max Manager", role="manager")


@pytest.fixture()
def member(make_user):
    return make_user("Mia Member")


@pytest.fixture()
def other_member(make_user):
    return make_user("Olli Other")


@pytest.fixture()
def orm_user(db_session):
    """UserORM for engine-level calls."""
    from orm import UserORM

    def _get(user):
        return db_session.get(UserORM, user.id)

    return _get


def auth(user) -> dict:
    return {"X-User-Id": user.id}


@pytest.fixture()
def headers():
    return auth
