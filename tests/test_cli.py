from __future__ import annotations

import json

import pytest

from qftp.cli import EXIT_BOOTSTRAP, EXIT_OK, main, outcome_payload
from qftp.dispatcher import Operation, Outcome
from qftp.errors import TransferIncomplete
from qftp.operations import DownloadResult


def _dirs(tmp_path):
    return ["--upload-dir", str(tmp_path / "up"), "--download-dir", str(tmp_path / "down")]


def test_local_lists_upload_candidates(tmp_path, capsys):
    (tmp_path / "up").mkdir()
    (tmp_path / "up" / "upload1.txt").write_bytes(b"abc")

    assert main(["local", *_dirs(tmp_path)]) == EXIT_OK
    assert "1. upload1.txt (3 bytes)" in capsys.readouterr().out
    assert (tmp_path / "down").is_dir()


def test_local_json(tmp_path, capsys):
    assert main(["local", "--json", *_dirs(tmp_path)]) == EXIT_OK
    assert json.loads(capsys.readouterr().out) == []


def test_bootstrap_failure_halts_before_network(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    code = main(["list", "--upload-dir", str(blocker / "up"), "--download-dir", str(tmp_path / "down")])
    assert code == EXIT_BOOTSTRAP


def test_pin_without_fingerprint_is_usage_error(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["list", "--trust", "pin", *_dirs(tmp_path)])
    assert exc.value.code == 2


def test_outcome_payload_for_partial_download(tmp_path):
    result = DownloadResult("a.bin", tmp_path / "a.bin", expected=10, received=4)
    payload = outcome_payload(Outcome(Operation.DOWNLOAD, result, TransferIncomplete("a.bin", 10, 4)))
    assert payload["ok"] is False
    assert payload["error"] == "TransferIncomplete"
    assert payload["missing"] == 6
    assert payload["received"] == 4
