from backend.database import init_db


def _smoke_test_connection(mocker, fail_on):
    """Connection whose cursor raises on the first statement starting with `fail_on`."""
    statements = []
    conn = mocker.MagicMock()
    cur = conn.cursor.return_value

    def execute(sql, params=None):
        verb = sql.split()[0]
        statements.append(verb)
        if verb == fail_on:
            raise Exception("current transaction is aborted")

    cur.execute.side_effect = execute
    cur.fetchone.side_effect = [
        {"now": "2026-01-01 00:00:00"},
        {"id": "0b0e7b6e-1f54-4a8e-9f4c-2d1c7c3b9a10"},
        {"title": "测试", "lines": 2},
        {"share_count": 1},
    ]
    conn.rollback.side_effect = lambda: statements.append("ROLLBACK")
    mocker.patch("backend.database.init_db.get_db", return_value=conn)
    return conn, cur, statements


def test_smoke_test_rolls_back_before_cleanup(mocker):
    conn, cur, statements = _smoke_test_connection(mocker, fail_on="UPDATE")

    init_db.run_smoke_test()

    assert statements[-2:] == ["ROLLBACK", "DELETE"]
    delete_sql, delete_params = cur.execute.call_args.args
    assert delete_sql.startswith("DELETE FROM poetry")
    assert delete_params == ("0b0e7b6e-1f54-4a8e-9f4c-2d1c7c3b9a10",)
    cur.close.assert_called_once()
    conn.close.assert_called_once()


def test_smoke_test_failure_before_insert_skips_delete(mocker):
    conn, cur, statements = _smoke_test_connection(mocker, fail_on="INSERT")

    init_db.run_smoke_test()

    assert "DELETE" not in statements
    assert statements[-1] == "ROLLBACK"
    conn.close.assert_called_once()


def test_init_db_applies_schema(mocker):
    conn = mocker.MagicMock()
    conn.__enter__.return_value = conn
    cur = conn.cursor.return_value.__enter__.return_value
    mocker.patch("backend.database.init_db.get_db", return_value=conn)

    init_db.init_db()

    cur.execute.assert_called_once_with(init_db.SCHEMA_SQL)
    conn.commit.assert_called_once()
