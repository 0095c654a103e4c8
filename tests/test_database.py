from hft_fleet.common.database import engine_options


def test_sqlite_gets_busy_timeout_and_no_pool_sizing(monkeypatch):
    monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_SECONDS", "3")
    monkeypatch.delenv("SQL_ECHO", raising=False)

    options = engine_options("sqlite+aiosqlite:///./fleet.db")

    assert options["connect_args"] == {"check_same_thread": False, "timeout": 3.0}
    assert options["echo"] is False
    assert "pool_size" not in options


def test_server_database_pool_comes_from_env(monkeypatch):
    monkeypatch.setenv("DB_POOL_SIZE", "12")
    monkeypatch.setenv("DB_MAX_OVERFLOW", "-4")
    monkeypatch.setenv("SQL_ECHO", "true")

    options = engine_options("postgresql+asyncpg://fleet:secret@db:5432/fleet")

    assert options["pool_size"] == 12
    assert options["max_overflow"] == 0
    assert options["pool_pre_ping"] is True
    assert options["pool_recycle"] == 1800
    assert options["echo"] is True
    assert "connect_args" not in options
