"""
Schema Initializer

Creates the price tracking schema and applies additive fixes. Every statement
is safe to re-run against a database holding some or all of the objects:

Tables (CREATE TABLE IF NOT EXISTS, one statement each):
- items:              item metadata from the wiki mapping endpoint
- timeseries:         raw 5-minute average prices and volumes
- cleaned_timeseries: same shape as timeseries, after outlier cleaning
- latest_prices:      latest instant-buy / instant-sell snapshots
- price_predictions:  model predictions and their later verification

Migrations (check the catalog, apply only when missing):
- widen_prediction_prices:   price columns of price_predictions become
                             DOUBLE PRECISION (legacy databases stored
                             integers and lost the fraction)
- unique_prediction_per_type: one prediction row per (item_id, prediction_type)

Every price column is double precision. DuckDB has no SERIAL and no
ADD CONSTRAINT UNIQUE, so the fallback backend uses a sequence and a named
unique index instead.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Tuple

from sqlalchemy import exc, text
from sqlalchemy.engine import Connection

from runeprices.database.exceptions import ConnectionUnavailable, SchemaInitError
from runeprices.database.pool import ConnectionPool
from runeprices.database.profiles import BackendKind

logger = logging.getLogger(__name__)

PREDICTION_UNIQUE_CONSTRAINT = 'price_predictions_item_id_prediction_type_key'
PREDICTION_ID_SEQUENCE = 'price_predictions_id_seq'

PREDICTION_PRICE_COLUMNS = (
    'predicted_high_price',
    'predicted_low_price',
    'actual_high_price',
    'actual_low_price',
)

ID_COLUMNS = {
    BackendKind.PRIMARY: "id SERIAL PRIMARY KEY",
    BackendKind.FALLBACK: f"id INTEGER PRIMARY KEY DEFAULT nextval('{PREDICTION_ID_SEQUENCE}')",
}

PREAMBLE = {
    BackendKind.PRIMARY: [],
    BackendKind.FALLBACK: [f"CREATE SEQUENCE IF NOT EXISTS {PREDICTION_ID_SEQUENCE}"],
}

TABLES: List[Tuple[str, str]] = [
    ('items', """
        CREATE TABLE IF NOT EXISTS items (
            id INT PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            icon_url VARCHAR(255),
            is_members_only BOOLEAN,
            low_alchemy_value INT,
            high_alchemy_value INT,
            shop_value INT,
            grand_exchange_limit INT,
            last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """),
    ('timeseries', """
        CREATE TABLE IF NOT EXISTS timeseries (
            item_id INT,
            timestamp_seconds BIGINT,
            average_high_price DOUBLE PRECISION,
            average_low_price DOUBLE PRECISION,
            high_price_volume BIGINT,
            low_price_volume BIGINT,
            PRIMARY KEY (item_id, timestamp_seconds)
        )
    """),
    ('cleaned_timeseries', """
        CREATE TABLE IF NOT EXISTS cleaned_timeseries (
            item_id INT,
            timestamp_seconds BIGINT,
            average_high_price DOUBLE PRECISION,
            average_low_price DOUBLE PRECISION,
            high_price_volume BIGINT,
            low_price_volume BIGINT,
            PRIMARY KEY (item_id, timestamp_seconds)
        )
    """),
    ('latest_prices', """
        CREATE TABLE IF NOT EXISTS latest_prices (
            item_id INT,
            high_price DOUBLE PRECISION,
            high_price_time BIGINT,
            low_price DOUBLE PRECISION,
            low_price_time BIGINT,
            high_price_volume BIGINT,
            low_price_volume BIGINT,
            timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (item_id, timestamp)
        )
    """),
    ('price_predictions', """
        CREATE TABLE IF NOT EXISTS price_predictions (
            {id_column},
            item_id INT NOT NULL,
            prediction_type VARCHAR(10) NOT NULL,
            predicted_high_price DOUBLE PRECISION NOT NULL,
            predicted_low_price DOUBLE PRECISION NOT NULL,
            prediction_time TIMESTAMP NOT NULL,
            actual_high_price DOUBLE PRECISION,
            actual_low_price DOUBLE PRECISION,
            verification_time TIMESTAMP,
            accuracy_percent DOUBLE PRECISION,
            is_verified BOOLEAN DEFAULT FALSE
        )
    """),
]

SCHEMA_TABLES = tuple(name for name, _ in TABLES)


# ============================================================================
# MIGRATIONS
# ============================================================================

@dataclass(frozen=True)
class MigrationStep:
    """
    Additive schema change in check-then-apply form.

    find_missing inspects the catalog and returns what still needs changing
    (empty when the step is already applied); statements turns that into DDL.
    """
    name: str
    find_missing: Callable[[Connection, BackendKind], List[str]]
    statements: Callable[[List[str], BackendKind], List[str]]


def _narrow_price_columns(connection: Connection, kind: BackendKind) -> List[str]:
    columns = ', '.join(f"'{c}'" for c in PREDICTION_PRICE_COLUMNS)
    result = connection.execute(text(f"""
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema()
          AND table_name = 'price_predictions'
          AND column_name IN ({columns})
          AND upper(data_type) NOT IN ('DOUBLE PRECISION', 'DOUBLE')
        ORDER BY column_name
    """))
    return list(result.scalars())


def _widen_price_columns(columns: List[str], kind: BackendKind) -> List[str]:
    if kind is BackendKind.PRIMARY:
        return [
            f"ALTER TABLE price_predictions ALTER COLUMN {c} "
            f"TYPE DOUBLE PRECISION USING {c}::DOUBLE PRECISION"
            for c in columns
        ]
    return [f"ALTER TABLE price_predictions ALTER COLUMN {c} TYPE DOUBLE" for c in columns]


def _missing_unique_constraint(connection: Connection, kind: BackendKind) -> List[str]:
    if kind is BackendKind.PRIMARY:
        query = """
            SELECT 1 FROM pg_indexes
            WHERE schemaname = current_schema()
              AND tablename = 'price_predictions'
              AND indexname = :name
        """
    else:
        query = """
            SELECT 1 FROM duckdb_indexes()
            WHERE schema_name = current_schema()
              AND table_name = 'price_predictions'
              AND index_name = :name
        """
    found = connection.execute(text(query), {'name': PREDICTION_UNIQUE_CONSTRAINT}).first()
    return [] if found else [PREDICTION_UNIQUE_CONSTRAINT]


def _add_unique_constraint(names: List[str], kind: BackendKind) -> List[str]:
    if kind is BackendKind.PRIMARY:
        return [
            f"ALTER TABLE price_predictions ADD CONSTRAINT {name} UNIQUE (item_id, prediction_type)"
            for name in names
        ]
    return [
        f"CREATE UNIQUE INDEX {name} ON price_predictions (item_id, prediction_type)"
        for name in names
    ]


# Order matters on DuckDB: a table with an index can no longer be altered
MIGRATIONS: List[MigrationStep] = [
    MigrationStep('widen_prediction_prices', _narrow_price_columns, _widen_price_columns),
    MigrationStep('unique_prediction_per_type', _missing_unique_constraint, _add_unique_constraint),
]


# ============================================================================
# INITIALIZER
# ============================================================================

def _error_detail(error: exc.SQLAlchemyError) -> str:
    return str(getattr(error, "orig", None) or error)


def _execute(connection: Connection, statement: str, description: str):
    """Run one DDL statement in its own transaction"""
    try:
        connection.execute(text(statement))
        connection.commit()
    except exc.SQLAlchemyError as e:
        connection.rollback()
        detail = _error_detail(e)
        if "already exists" in detail.lower():
            logger.info(f"{description} already exists, skipping")
            return
        logger.error(f"{description} failed: {detail}")
        raise SchemaInitError(f"{description} failed: {detail}") from e


def _apply_migration(connection: Connection, step: MigrationStep, kind: BackendKind):
    try:
        missing = step.find_missing(connection, kind)
        connection.commit()
    except exc.SQLAlchemyError as e:
        connection.rollback()
        raise SchemaInitError(f"Catalog check for migration {step.name} failed: {e}") from e

    if not missing:
        logger.debug(f"Migration {step.name}: already applied")
        return

    for statement in step.statements(missing, kind):
        _execute(connection, statement, f"Migration {step.name}")
    logger.info(f"Migration {step.name} applied ({', '.join(missing)})")


def ensure_schema(pool: ConnectionPool) -> None:
    """
    Create all tables and apply pending migrations.

    Each statement commits on its own: a failure leaves whatever was already
    created in place, and the next run picks up from there.

    Args:
        pool: Connection pool of the selected backend

    Raises:
        SchemaInitError: If any statement fails for a reason other than
            the object already existing
    """
    kind = pool.profile.kind
    logger.info(f"Initializing database schema ({kind.value})")

    try:
        connection = pool.acquire()
    except ConnectionUnavailable as e:
        raise SchemaInitError(f"No connection available for schema initialization: {e}") from e

    with connection:
        for statement in PREAMBLE[kind]:
            _execute(connection, statement, "Sequence")

        for table, ddl in TABLES:
            _execute(connection, ddl.format(id_column=ID_COLUMNS[kind]), f"Table {table}")
            logger.info(f"Table {table} created/verified")

        for step in MIGRATIONS:
            _apply_migration(connection, step, kind)

    logger.info("Database schema initialized successfully")
