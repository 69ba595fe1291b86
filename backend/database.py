import logging
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from config import settings

log = logging.getLogger(__name__)


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite connections get foreign keys and
    SAVEPOINT-capable transaction handling (batch → row fallbacks rely on it).
    """
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    eng = create_engine(url, echo=False, **kwargs)

    if is_sqlite:
        @event.listens_for(eng, "connect")
        def _on_connect(dbapi_conn, _record):
            # pysqlite's implicit BEGIN breaks SAVEPOINT; we emit BEGIN ourselves
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON;")
            # readers must not block the pipeline's status writes
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.close()

        @event.listens_for(eng, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return eng


engine = create_db_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for FastAPI endpoints."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _auto_migrate(bind: Engine):
    """Compare SQLAlchemy models against the live DB schema and
    ALTER TABLE to add any missing columns.  Forward-only: new columns
    on existing tables are added, nothing is ever dropped or retyped.
    """
    inspector = inspect(bind)
    existing_tables = inspector.get_table_names()

    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue  # create_all() will handle brand-new tables

        db_columns = {col["name"] for col in inspector.get_columns(table.name)}
        model_columns = {col.name for col in table.columns}

        missing = model_columns - db_columns
        if not missing:
            continue

        log.warning("Table '%s' is missing columns: %s — running ALTER TABLE",
                    table.name, missing)

        with bind.begin() as conn:
            for col_name in missing:
                col = table.c[col_name]
                col_type = col.type.compile(bind.dialect)
                default_clause = ""
                if col.default is not None and not callable(col.default.arg):
                    default_val = col.default.arg
                    if isinstance(default_val, bool):
                        default_clause = f" DEFAULT {int(default_val)}"
                    elif isinstance(default_val, str):
                        default_clause = f" DEFAULT '{default_val}'"
                    elif isinstance(default_val, (int, float)):
                        default_clause = f" DEFAULT {default_val}"
                stmt = f"ALTER TABLE {table.name} ADD COLUMN {col_name} {col_type}{default_clause}"
                log.info("  ➜ %s", stmt)
                conn.execute(text(stmt))


def init_db(bind: Engine = None):
    """Create all tables and migrate any missing columns."""
    import models  # noqa: F401 ensure models are registered with Base
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _auto_migrate(bind)
