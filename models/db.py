from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def engine_options(database_uri: str, lock_timeout_seconds: int) -> dict:
    """
    Engine options that bound how long a statement may wait on a lock.
    SQLite uses the driver busy timeout; Postgres gets lock/statement timeouts.
    """
    if database_uri.startswith("sqlite"):
        return {"connect_args": {"timeout": lock_timeout_seconds}}
    if database_uri.startswith("postgres"):
        ms = lock_timeout_seconds * 1000
        return {
            "pool_pre_ping": True,
            "connect_args": {"options": f"-c lock_timeout={ms} -c statement_timeout={ms * 2}"},
        }
    return {}
