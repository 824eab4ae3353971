import datetime
import json

import pytest

from csm_patch.common.models import IPReservation
from csm_patch.tools.backup import BackupWriter, run_timestamp


def test_run_timestamp():
    assert run_timestamp(datetime.datetime(2024, 3, 5, 7, 8, 9)) == "20240305_070809"


def test_backup_writer(tmp_path):
    writer = BackupWriter(tmp_path / "nested" / "dir", "20240101_000000")
    path = writer.write("sls-dumpstate", {"Networks": {}})
    assert path == tmp_path / "nested" / "dir" / "sls-dumpstate-20240101_000000.json"
    assert json.loads(path.read_text()) == {"Networks": {}}

    path = writer.write("bss-x3000c0s1b0n0-bootparams-backup",
                        IPReservation(name="node-a", ip_address="10.0.0.1", ip_address6=None))
    assert json.loads(path.read_text()) == {"Name": "node-a", "IPAddress": "10.0.0.1"}

    assert [a.name for a in writer.artifacts] == ["sls-dumpstate", "bss-x3000c0s1b0n0-bootparams-backup"]
    assert all(a.timestamp == "20240101_000000" for a in writer.artifacts)


def test_backup_writer_sanitizes_and_is_write_once(tmp_path):
    writer = BackupWriter(tmp_path, "20240101_000000")
    path = writer.write("sls-../CMN network", [])
    assert path.parent == tmp_path
    assert path.name == "sls-.._CMN_network-20240101_000000.json"

    with pytest.raises(FileExistsError):
        writer.write("sls-../CMN network", [])
    assert len(writer.artifacts) == 1
