import json

from affinity_ledger import cli


def _run(capsys, *argv):
    code = cli.main(list(argv))
    lines = capsys.readouterr().out.splitlines()
    start = lines.index("{")
    end = len(lines) - lines[::-1].index("}")
    return code, json.loads("\n".join(lines[start:end]))


def test_append_run_and_query(tmp_path, capsys, monkeypatch):
    monkeypatch.setenv("LEDGER_DB_URL", f"sqlite:///{tmp_path / 'ledger.db'}")
    base = ["--base-dir", str(tmp_path)]

    code, appended = _run(
        capsys,
        "append-event",
        "--user", "u1",
        "--type", "social.followed",
        "--metadata", json.dumps({"entity_id": "a1"}),
        "--timestamp", "2025-03-01T12:00:00",
        *base,
    )
    assert code == 0
    assert appended["created"] is True

    code, summary = _run(capsys, "run-batch", *base)
    assert code == 0
    assert summary["processed"] == 1

    code, board = _run(capsys, "leaderboard", "--category", "engagement", *base)
    assert code == 0
    assert board["entries"][0]["entity_id"] == "a1"

    code, strength = _run(capsys, "strength", "--entity", "a1", "--breakdown", *base)
    assert code == 0
    assert strength["breakdown"][0]["category"] == "engagement"


def test_errors_exit_non_zero(tmp_path, capsys, monkeypatch):
    monkeypatch.setenv("LEDGER_DB_URL", f"sqlite:///{tmp_path / 'ledger.db'}")
    code, output = _run(capsys, "profile", "--user", "ghost", "--base-dir", str(tmp_path))
    assert code == 1
    assert output["code"] == "not_found"

    code, output = _run(
        capsys, "append-event", "--user", "u1", "--type", "content.played",
        "--metadata", "{broken", "--base-dir", str(tmp_path),
    )
    assert code == 1
    assert "metadata" in output["error"]
