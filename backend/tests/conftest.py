import os, sys, pytest
# Ensure backend directory is on path so 'backoffice' can be imported without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from flask_jwt_extended import create_access_token
import backoffice
from backoffice import create_app
from backoffice.models.access import Base
import backoffice.models.audit  # noqa: F401

TEST_CONFIG = {
    'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
    'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
    'ACCESS_SYNC_ON_STARTUP': False,
    'TESTING': True,
}


@pytest.fixture()
def app_instance():
    app = create_app(dict(TEST_CONFIG))
    # Fresh in-memory schema per test; the app context stays pushed for the test body
    Base.metadata.create_all(backoffice.db_engine)
    with app.app_context():
        yield app


@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture()
def grant_index(app_instance):
    return app_instance.extensions['grant_index']


@pytest.fixture()
def auth_headers(app_instance):
    def make(user):
        token = create_access_token(identity=str(user.id))
        return {'Authorization': f'Bearer {token}'}
    return make
