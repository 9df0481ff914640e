import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def app(tmp_path):
    from app import create_app

    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
    })
    with app.app_context():
        yield app


@pytest.fixture
def seeded(app):
    from curriculum import seed_curriculum

    seed_curriculum()
    return app


@pytest.fixture
def make_user(app):
    from models import User, db

    def _make(email="learner@example.com"):
        user = User(email=email)
        user.set_password("secret")
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def first_module(seeded):
    from curriculum import list_modules

    return list_modules()[0]


@pytest.fixture
def client(seeded):
    client = seeded.test_client()
    resp = client.post("/api/register", json={"email": "api@example.com", "password": "pw"})
    assert resp.status_code == 201
    return client
