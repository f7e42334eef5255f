import os
import tempfile
from types import SimpleNamespace

_TMP_DIR = tempfile.mkdtemp(prefix="shopbook-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'app.db')}")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Shanghai")
os.environ.setdefault("LOG_JSON", "0")
os.environ.setdefault("BOOKING_LOCK_BACKEND", "local")

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from shopbook.api import public_router, router  # noqa: E402
from shopbook.core.locking import LocalLockBackend, set_lock_backend  # noqa: E402
from shopbook.db import build_engine, build_session_factory, get_db, init_db  # noqa: E402
from shopbook.services import create_service, create_shop, create_staff  # noqa: E402


@pytest.fixture(autouse=True)
def local_lock_backend():
    backend = LocalLockBackend()
    set_lock_backend(backend)
    yield backend
    set_lock_backend(None)


@pytest.fixture
def session_local(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test_shopbook.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def shop_setup(db):
    """One shop, one staff member (10:00-21:00) and a 30 and a 60 minute service."""
    shop = create_shop(db, "Corner Cuts", platform_fee_bps=1000, staff_fee_bps=4000)
    staff = create_staff(db, shop.id, "Mia", work_start_hour=10, work_end_hour=21)
    haircut = create_service(db, shop.id, "Haircut", duration_minutes=30, base_price=10000)
    colour = create_service(db, shop.id, "Colour", duration_minutes=60, base_price=25000)
    return SimpleNamespace(
        shop_id=shop.id,
        staff_id=staff.id,
        haircut_id=haircut.id,
        colour_id=colour.id,
    )


@pytest.fixture
def client(session_local):
    app = FastAPI()
    app.include_router(router)
    app.include_router(public_router)

    def override_get_db():
        session = session_local()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
