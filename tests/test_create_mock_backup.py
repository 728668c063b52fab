import sys
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

import create_mock_backup
from backup_catalog import BackupCatalog, KeyTimestampRule
from storage import LocalStorageAdapter


def test_make_backup_history_names_and_mtimes(tmp_path: Path) -> None:
    now = datetime(2024, 3, 10, 12, 30, 15, 999, tzinfo=timezone.utc)

    paths = create_mock_backup.make_backup_history(
        tmp_path, count=3, step=timedelta(hours=12), now=now
    )

    assert [path.name for path in paths] == [
        "2024-03-10-12-30-15.zip",
        "2024-03-10-00-30-15.zip",
        "2024-03-09-12-30-15.zip",
    ]
    assert paths[1].stat().st_mtime == datetime(2024, 3, 10, 0, 30, 15, tzinfo=timezone.utc).timestamp()
    with zipfile.ZipFile(paths[0]) as archive:
        assert archive.namelist() == ["backup.txt"]


def test_key_and_metadata_timestamps_agree(tmp_path: Path) -> None:
    create_mock_backup.make_backup_history(
        tmp_path, count=4, step=timedelta(days=3), now=datetime(2024, 1, 5, tzinfo=timezone.utc)
    )
    objects = LocalStorageAdapter(tmp_path).list_page("").objects

    by_metadata = BackupCatalog().build(objects)
    by_key = BackupCatalog(KeyTimestampRule()).build(objects)

    assert by_metadata == by_key


def test_make_backup_history_rejects_bad_arguments(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        create_mock_backup.make_backup_history(tmp_path, count=0, step=timedelta(days=1))
    with pytest.raises(ValueError):
        create_mock_backup.make_backup_history(tmp_path, count=2, step=timedelta(0))


def test_main_creates_requested_backups(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    exit_code = create_mock_backup.main(
        ["--backup-dir", str(tmp_path), "--count", "5", "--timestamp-step", "6h", "--suffix", ".tar.gz"]
    )

    assert exit_code == 0
    names = sorted(path.name for path in tmp_path.iterdir())
    assert len(names) == 5
    assert all(name.endswith(".tar.gz") for name in names)
    assert capsys.readouterr().out.count("Created mock backup:") == 5


def test_main_reports_invalid_step(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    exit_code = create_mock_backup.main(["--backup-dir", str(tmp_path), "--timestamp-step", "soon"])

    assert exit_code == 2
    assert "Error:" in capsys.readouterr().out
