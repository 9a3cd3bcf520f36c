import os
from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import sessionmaker, declarative_base
from dotenv import load_dotenv

# Load .env file with explicit UTF-8 encoding
load_dotenv(encoding='utf-8')


def normalize_database_url(url):
    """
    Round-trips the URL through SQLAlchemy's parser so every component is
    properly encoded. sqlite:////absolute/path keeps its four slashes.
    """
    if not url:
        return url
    try:
        return make_url(url).render_as_string(hide_password=False)
    except ArgumentError:
        # If parsing fails, ensure it's a valid UTF-8 string by replacing invalid bytes
        return url.encode('utf-8', errors='replace').decode('utf-8')


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL"))

connect_args = None
if DATABASE_URL and DATABASE_URL.startswith("postgres"):
    connect_args = {"options": "-c timezone=utc"}
elif DATABASE_URL and DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(DATABASE_URL, connect_args=connect_args or {})

if engine.dialect.name == "sqlite":
    # SQLite only: take the write lock when the transaction starts so concurrent
    # writers queue on the busy timeout instead of failing on lock upgrade.
    @event.listens_for(engine, "connect")
    def _sqlite_disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
