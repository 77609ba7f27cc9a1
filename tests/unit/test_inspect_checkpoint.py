# tests/unit/test_inspect_checkpoint.py

import importlib.util
import json
from pathlib import Path

import pytest

from bulk_transfer.checkpoint import encode_checkpoint
from bulk_transfer.schemas import CheckpointState

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "inspect_checkpoint.py"


@pytest.fixture(scope="module")
def inspect_checkpoint():
    spec = importlib.util.spec_from_file_location("inspect_checkpoint", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def checkpoint_file(tmp_path):
    state = CheckpointState(
        page_number=3,
        last_page_number=3,
        upload_count=2,
        total_resource_count=5,
        object_summary="Patient[3,2]",
        partition_cursor_index=1,
        exhausted=True,
    )
    path = tmp_path / "Patient.json"
    path.write_text(encode_checkpoint(state), encoding="utf-8")
    return path


def test_renders_tables(inspect_checkpoint, checkpoint_file, capsys):
    assert inspect_checkpoint.main([str(checkpoint_file)]) == 0

    out = capsys.readouterr().out
    assert "Completed objects" in out
    assert "Patient" in out
    assert "yes" in out


def test_prints_download_urls(inspect_checkpoint, checkpoint_file, capsys):
    code = inspect_checkpoint.main(
        [str(checkpoint_file), "--bucket", "export-bucket", "--prefix", "job-1"]
    )

    assert code == 0
    assert "export-bucket/job-1/Patient_2.ndjson" in capsys.readouterr().out


def test_json_output(inspect_checkpoint, checkpoint_file, capsys):
    assert inspect_checkpoint.main([str(checkpoint_file), "--json"]) == 0

    assert json.loads(capsys.readouterr().out)["objectSummary"] == "Patient[3,2]"


def test_corrupt_checkpoint(inspect_checkpoint, tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"objectSummary": "Patient[3]"}), encoding="utf-8")

    assert inspect_checkpoint.main([str(path)]) == 1
    assert "CHECKPOINT_CORRUPTION" in capsys.readouterr().out


def test_missing_file(inspect_checkpoint, tmp_path):
    assert inspect_checkpoint.main([str(tmp_path / "nope.json")]) == 2
