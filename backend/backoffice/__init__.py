from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import logging

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def _configure_sqlite_connection(dbapi_conn, _record):
    # Let SQLAlchemy own BEGIN so SAVEPOINTs used by the access sync behave
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn):
    conn.exec_driver_sql("BEGIN")


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    from .config.settings import load_settings
    app = Flask(__name__)
    app.config.update(load_settings())

    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    app.logger.setLevel(app.config['LOG_LEVEL'])
    logging.getLogger('backoffice').setLevel(app.config['LOG_LEVEL'])

    # Database
    db_url = app.config['DATABASE_URL']
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        db_engine = create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_engine = create_engine(db_url, echo=False, future=True)
    if db_engine.dialect.name == 'sqlite':
        event.listen(db_engine, "connect", _configure_sqlite_connection)
        event.listen(db_engine, "begin", _begin_sqlite_transaction)
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    jwt.init_app(app)

    from .services.grants import GrantIndex
    app.extensions['grant_index'] = GrantIndex()

    from .routes.access import access_bp
    app.register_blueprint(access_bp, url_prefix='/api')

    @app.teardown_appcontext
    def remove_session(exc=None):
        SessionLocal.remove()

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    from .errors import AccessControlError

    @app.errorhandler(AccessControlError)
    def handle_access_errors(e):  # type: ignore
        if e.status_code >= 500:
            app.logger.error('Access control backend failure: %s', e.message)
        elif e.errors:
            app.logger.warning('Validation failed: %s', sorted(e.errors))
        payload = {
            'success': False,
            'message': e.message,
            'error': {'status': e.status_code, 'title': e.title, 'detail': e.message},
        }
        if e.errors:
            payload['errors'] = e.errors
        return payload, e.status_code

    # Unified error handler producing the same envelope for everything else
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            payload = {
                'success': False,
                'message': e.description,
                'error': {
                    'status': e.code,
                    'title': e.name,
                    'detail': e.description,
                }
            }
            return payload, e.code
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return {
            'success': False,
            'message': 'Unexpected error',
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error'
            }
        }, 500

    if app.config.get('ACCESS_SYNC_ON_STARTUP'):
        from .models.access import Base
        from .services.seeding import sync_access
        with app.app_context():
            Base.metadata.create_all(db_engine, checkfirst=True)
            report = sync_access()
            app.logger.info('Startup access sync: %s', report.summary())

    return app


def get_db():
    return SessionLocal()
