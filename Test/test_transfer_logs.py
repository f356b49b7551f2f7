import datetime
import os
import subprocess
import sys
import time
import zipfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from rra_codec import (
    INT_SENTINEL,
    DeviceRecord,
    SampleKind,
    SubsetOutOfRange,
    SubsetRecord,
    encode_schema,
    read_ring_file,
    write_ring_file,
)
from transfer_logs import (
    E_INSUFFICIENT_CL_ARGS,
    E_INVALID_END_DATE,
    E_NO_DAT_FILES_FOUND,
    create_backups,
    find_rra_databases,
    inject_data,
    interchange_path,
    load_device_registry,
    load_transfer_config,
    parse_cutoff_date,
    resolve_device_name,
    ring_buffer_path,
    rra_to_interchange,
    save_transfer_config,
    unzip_exports,
)

MAX = INT_SENTINEL
REPO_ROOT = Path(__file__).resolve().parents[1]


def _subset(**overrides):
    fields = dict(
        t_prev=100,
        t_last=110,
        min_samples_per_bin=1,
        bin_length="10s",
        offset=2,
        n_samples=5,
        interval="5min",
        consolidator="avg",
    )
    fields.update(overrides)
    return SubsetRecord(**fields)


def _device(device_id, subsets, sample_type="integer"):
    return DeviceRecord(device_id, "quantity", "hdrv_zwave", sample_type, subsets=list(subsets))


def _write_registry(path, entries):
    loggers = "".join(
        f"  <rrdLogger>\n    <uuid>{uuid}</uuid>\n    <name>{name}</name>\n  </rrdLogger>\n" for uuid, name in entries
    )
    path.write_text(f"<Config>\n{loggers}</Config>\n", encoding="utf-8")


def _run_cli(args, cwd):
    return subprocess.run(
        [sys.executable, str(REPO_ROOT / "transfer_logs.py")] + [str(a) for a in args],
        capture_output=True,
        text=True,
        check=False,
        cwd=str(cwd),
    )


def test_parse_cutoff_date_is_end_of_day():
    expected = int(time.mktime(datetime.datetime(2019, 3, 9).timetuple())) + 86400
    assert parse_cutoff_date("2019-03-09") == expected
    assert parse_cutoff_date(None) is None
    assert parse_cutoff_date("  ") is None
    with pytest.raises(ValueError):
        parse_cutoff_date("2019-13-01")
    with pytest.raises(ValueError):
        parse_cutoff_date("09-03-2019")


def test_device_registry_lookup(tmp_path):
    path = tmp_path / "config_hcb_rrd.xml"
    _write_registry(path, [("aaa", "elec_flow"), ("bbb", "thermstat")])
    assert load_device_registry(str(path)) == {"aaa": "elec_flow", "bbb": "thermstat"}
    assert resolve_device_name(str(path), "bbb") == "thermstat"
    assert resolve_device_name(str(path), "zzz") is None

    broken = tmp_path / "broken.xml"
    broken.write_text("<Config><rrdLogger>", encoding="utf-8")
    with pytest.raises(ValueError):
        load_device_registry(str(broken))


def test_path_builders():
    record = _device("aaa", [_subset(interval="5min"), _subset(interval="hours")])
    assert ring_buffer_path("/data", "aaa", "5min") == os.path.join("/data", "aaa-5min.rra")

    assert interchange_path("/up", record, 0) is None
    record.device_name = "elec_flow"
    assert interchange_path("/up", record, 1) == os.path.join("/up", "elec_flow_quantity_hours.csv")
    record.device_name = "thermstat_setpoint"
    assert interchange_path("/up", record, 0) == os.path.join("/up", "thermstat_setpoint_5min.csv")
    with pytest.raises(SubsetOutOfRange):
        interchange_path("/up", record, 2)


def test_find_rra_databases(tmp_path):
    missing = str(tmp_path / "missing")
    assert find_rra_databases((missing, str(tmp_path))) == str(tmp_path)
    assert find_rra_databases((missing,)) is None


def test_transfer_config_aliases_and_roundtrip(tmp_path):
    path = tmp_path / "transfer.toml"
    path.write_text('rra-dir = "/data/rra"\nbackup_root = "/tmp/bk"\n', encoding="utf-8")
    config = load_transfer_config(str(path))
    assert config["rra_dir"] == "/data/rra"
    assert config["backup_root"] == "/tmp/bk"
    assert config["hcb_rrd_config"] == "/HCBv2/config/config_hcb_rrd.xml"
    assert config["upload_dir"] == ""

    config["upload_dir"] = "/var/upload"
    save_transfer_config(str(path), config)
    assert load_transfer_config(str(path)) == config
    assert load_transfer_config(str(tmp_path / "absent.toml"))["rra_dir"] == ""


def test_transfer_config_read_with_toml_package(tmp_path, monkeypatch):
    path = tmp_path / "transfer.toml"
    path.write_text('rra_dir = "/x"\n', encoding="utf-8")
    # interpreters without tomllib fall back to the toml package
    monkeypatch.setitem(sys.modules, "tomllib", None)
    assert load_transfer_config(str(path))["rra_dir"] == "/x"


def test_save_transfer_config_failure_leaves_no_temp_file(tmp_path, monkeypatch):
    path = tmp_path / "transfer.toml"
    path.write_text('rra_dir = "/old"\n', encoding="utf-8")

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", fail_replace)
    with pytest.raises(OSError):
        save_transfer_config(str(path), {"rra_dir": "/new"})
    monkeypatch.undo()

    assert sorted(p.name for p in tmp_path.iterdir()) == ["transfer.toml"]
    assert load_transfer_config(str(path))["rra_dir"] == "/old"


def test_create_backups_writes_restore_script(tmp_path, capsys):
    rra_dir = tmp_path / "rra"
    rra_dir.mkdir()
    (rra_dir / "aaa.dat").write_bytes(b"dat")
    (rra_dir / "aaa-5min.rra").write_bytes(b"rra")
    registry = tmp_path / "config" / "config_hcb_rrd.xml"
    registry.parent.mkdir()
    registry.write_text("<Config/>", encoding="utf-8")

    backup_dir = create_backups(
        str(rra_dir),
        str(tmp_path / "rra_backups"),
        (str(registry), str(tmp_path / "config" / "absent.xml")),
        now=1234,
    )

    assert backup_dir == str(tmp_path / "rra_backups") + "_1234"
    assert (Path(backup_dir) / "aaa.dat").read_bytes() == b"dat"
    assert (Path(backup_dir) / "aaa-5min.rra").read_bytes() == b"rra"
    assert (Path(backup_dir) / "config_hcb_rrd.xml").exists()
    script = Path(backup_dir) / "restore_logs.sh"
    assert os.access(script, os.X_OK)
    text = script.read_text(encoding="utf-8")
    assert text.startswith("#! /bin/sh\n")
    assert f"/*.rra {rra_dir}" in text
    assert f"/*.dat {rra_dir}" in text
    assert "absent.xml not found" in capsys.readouterr().out


def test_unzip_exports_extracts_nested_archives(tmp_path):
    inner = {}
    for name, member in (("thermostat.zip", "thermstat_5min.csv"), ("usage.zip", "elec_flow_quantity_5min.csv")):
        path = tmp_path / f"build_{name}"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr(member, "100,1\n")
        inner[name] = path.read_bytes()
    with zipfile.ZipFile(tmp_path / "export.zip", "w") as zf:
        for name, payload in inner.items():
            zf.writestr(name, payload)

    names = unzip_exports(str(tmp_path))

    assert (tmp_path / "thermstat_5min.csv").read_text() == "100,1\n"
    assert (tmp_path / "elec_flow_quantity_5min.csv").exists()
    assert "usage.zip" in names


def test_unzip_exports_requires_export_zip(tmp_path):
    with pytest.raises(FileNotFoundError):
        unzip_exports(str(tmp_path))


def _populate_rra_dir(rra_dir):
    rra_dir.mkdir()
    (rra_dir / "aaa.dat").write_bytes(encode_schema(_device("aaa", [_subset()])))
    write_ring_file(str(rra_dir / "aaa-5min.rra"), [5, 7, 9, MAX, MAX], SampleKind.INTEGER)
    (rra_dir / "ccc.dat").write_bytes(encode_schema(_device("placeholder", [])))
    (rra_dir / "bad.dat").write_bytes(b"not a schema file at all")


def test_inject_data_merges_and_reports(tmp_path, capsys):
    rra_dir = tmp_path / "rra"
    upload_dir = tmp_path / "upload"
    upload_dir.mkdir()
    _populate_rra_dir(rra_dir)
    registry = tmp_path / "config_hcb_rrd.xml"
    _write_registry(registry, [("aaa", "elec_flow")])
    (upload_dir / "elec_flow_quantity_5min.csv").write_text("110,99\n100,7\n", encoding="utf-8")

    report = inject_data(str(rra_dir), str(upload_dir), str(registry))

    assert report.found == 3
    assert report.processed == 1
    assert report.not_provisioned == 1
    assert report.failed == 1
    assert report.subsets_written == 1
    assert read_ring_file(str(rra_dir / "aaa-5min.rra"), 5, SampleKind.INTEGER) == [5, 7, 99, MAX, MAX]
    out = capsys.readouterr().out
    assert "not yet initialised" in out
    assert "1 of 3 .dat files read and processed." in out


def test_inject_data_without_interchange_keeps_ring(tmp_path, capsys):
    rra_dir = tmp_path / "rra"
    upload_dir = tmp_path / "upload"
    upload_dir.mkdir()
    _populate_rra_dir(rra_dir)
    registry = tmp_path / "config_hcb_rrd.xml"
    _write_registry(registry, [("aaa", "elec_flow")])

    report = inject_data(str(rra_dir), str(upload_dir), str(registry))

    assert report.processed == 1
    assert report.subsets_written == 0
    assert read_ring_file(str(rra_dir / "aaa-5min.rra"), 5, SampleKind.INTEGER) == [5, 7, 9, MAX, MAX]
    assert "No interchange data" in capsys.readouterr().out


def test_inject_data_handles_corrupted_schema(tmp_path, capsys):
    rra_dir = tmp_path / "rra"
    upload_dir = tmp_path / "upload"
    rra_dir.mkdir()
    upload_dir.mkdir()
    subsets = [_subset(interval="5min"), _subset(interval="hours"), _subset(interval="days")]
    full = encode_schema(_device("aaa", subsets))
    two = encode_schema(_device("aaa", subsets[:2]))
    (rra_dir / "aaa.dat").write_bytes(full[:len(two) + 9])
    for interval in ("5min", "hours"):
        write_ring_file(str(rra_dir / f"aaa-{interval}.rra"), [1, 2, 3, 4, 5], SampleKind.INTEGER)
        (upload_dir / f"elec_flow_quantity_{interval}.csv").write_text("90,50\n", encoding="utf-8")
    registry = tmp_path / "config_hcb_rrd.xml"
    _write_registry(registry, [("aaa", "elec_flow")])

    report = inject_data(str(rra_dir), str(upload_dir), str(registry), cutoff=None)

    assert report.processed == 1
    assert report.subsets_written == 2
    for interval in ("5min", "hours"):
        assert read_ring_file(str(rra_dir / f"aaa-{interval}.rra"), 5, SampleKind.INTEGER) == [50, 2, 3, 4, 5]
    assert "partly corrupted" in capsys.readouterr().out


def test_inject_data_isolates_device_with_garbage_geometry(tmp_path, capsys):
    rra_dir = tmp_path / "rra"
    upload_dir = tmp_path / "upload"
    rra_dir.mkdir()
    upload_dir.mkdir()
    (rra_dir / "aaa.dat").write_bytes(encode_schema(_device("aaa", [_subset(offset=0, n_samples=2**31 - 1)])))
    (rra_dir / "aaa-5min.rra").write_bytes(b"\x01" * 12)
    (rra_dir / "bbb.dat").write_bytes(encode_schema(_device("bbb", [_subset()])))
    write_ring_file(str(rra_dir / "bbb-5min.rra"), [5, 7, 9, MAX, MAX], SampleKind.INTEGER)
    registry = tmp_path / "config_hcb_rrd.xml"
    _write_registry(registry, [("aaa", "gas_flow"), ("bbb", "elec_flow")])
    (upload_dir / "gas_flow_quantity_5min.csv").write_text("100,1\n", encoding="utf-8")
    (upload_dir / "elec_flow_quantity_5min.csv").write_text("110,99\n", encoding="utf-8")

    report = inject_data(str(rra_dir), str(upload_dir), str(registry))

    assert report.found == 2
    assert report.failed == 1
    assert report.processed == 1
    assert (rra_dir / "aaa-5min.rra").read_bytes() == b"\x01" * 12
    assert read_ring_file(str(rra_dir / "bbb-5min.rra"), 5, SampleKind.INTEGER) == [5, 7, 99, MAX, MAX]
    assert "holds 3 of" in capsys.readouterr().out


def test_inject_data_missing_directory_raises(tmp_path):
    with pytest.raises(OSError):
        inject_data(str(tmp_path / "missing"), str(tmp_path), str(tmp_path / "registry.xml"))


def test_rra_to_interchange_exports_rings(tmp_path, capsys):
    upload_dir = tmp_path / "upload"
    upload_dir.mkdir()
    (upload_dir / "aaa.dat").write_bytes(encode_schema(_device("aaa", [_subset()])))
    write_ring_file(str(upload_dir / "aaa-5min.rra"), [5, 7, 9, MAX, MAX], SampleKind.INTEGER)
    _write_registry(upload_dir / "config_hcb_rrd.xml", [("aaa", "elec_flow")])

    report = rra_to_interchange(str(upload_dir))

    assert report.found == 1
    assert report.processed == 1
    assert (upload_dir / "elec_flow_quantity_5min.csv").read_text(encoding="utf-8") == "90,5\n100,7\n110,9\n"
    assert "exported 3 samples" in capsys.readouterr().out


def test_rra_to_interchange_reports_nothing_found(tmp_path, capsys):
    report = rra_to_interchange(str(tmp_path))
    assert report.found == 0
    assert "nothing importable found" in capsys.readouterr().out


def test_cli_requires_upload_dir_and_mode(tmp_path):
    cfg = tmp_path / "empty.toml"
    cfg.write_text("", encoding="utf-8")
    result = _run_cli(["--config", cfg, "-r"], tmp_path)
    assert result.returncode == E_INSUFFICIENT_CL_ARGS
    assert result.stderr == ""
    assert "Insufficient or invalid command line arguments" in result.stdout


def test_cli_rejects_invalid_limit(tmp_path):
    cfg = tmp_path / "empty.toml"
    cfg.write_text("", encoding="utf-8")
    result = _run_cli(["--config", cfg, "-u", tmp_path, "-r", "-L", "yesterday"], tmp_path)
    assert result.returncode == E_INVALID_END_DATE
    assert result.stderr == ""


def test_cli_dump_dat(tmp_path):
    dat = tmp_path / "aaa.dat"
    dat.write_bytes(encode_schema(_device("aaa", [_subset()])))
    cfg = tmp_path / "empty.toml"
    cfg.write_text("", encoding="utf-8")
    result = _run_cli(["--config", cfg, "--dump-dat", dat], tmp_path)
    assert result.returncode == 0
    assert result.stderr == ""
    assert "deviceUuid      : aaa" in result.stdout
    assert "nr of subsets   : 1" in result.stdout


def test_cli_rra_mode_without_dat_files(tmp_path):
    upload_dir = tmp_path / "upload"
    rra_dir = tmp_path / "rra"
    upload_dir.mkdir()
    rra_dir.mkdir()
    cfg = tmp_path / "transfer.toml"
    cfg.write_text(f'pwrusage_config = "{tmp_path / "absent.xml"}"\n', encoding="utf-8")
    result = _run_cli(["--config", cfg, "-u", upload_dir, "-r", "--rra-dir", rra_dir], tmp_path)
    assert result.returncode == E_NO_DAT_FILES_FOUND
    assert result.stderr == ""
    assert "nothing importable found" in result.stdout


def test_cli_rra_mode_end_to_end(tmp_path):
    upload_dir = tmp_path / "upload"
    rra_dir = tmp_path / "rra"
    config_dir = tmp_path / "config"
    for directory in (upload_dir, rra_dir, config_dir):
        directory.mkdir()

    # old unit: newest sample at t=110
    (upload_dir / "aaa.dat").write_bytes(encode_schema(_device("aaa", [_subset()])))
    write_ring_file(str(upload_dir / "aaa-5min.rra"), [5, 7, 9, MAX, MAX], SampleKind.INTEGER)
    _write_registry(upload_dir / "config_hcb_rrd.xml", [("aaa", "elec_flow")])
    (upload_dir / "config_happ_pwrusage.xml").write_text(
        "<toFile><monthInfo><year>119</year><month>0</month><type>elec</type><usage>100</usage></monthInfo></toFile>",
        encoding="utf-8",
    )

    # new unit: newest sample at t=130, slots 0..2 still empty
    (rra_dir / "aaa.dat").write_bytes(encode_schema(_device("aaa", [_subset(t_prev=120, t_last=130, offset=4)])))
    write_ring_file(str(rra_dir / "aaa-5min.rra"), [MAX, MAX, MAX, 11, 12], SampleKind.INTEGER)
    _write_registry(config_dir / "config_hcb_rrd.xml", [("aaa", "elec_flow")])
    new_pwrusage = config_dir / "config_happ_pwrusage.xml"
    new_pwrusage.write_text("<toFile><version>1</version></toFile>", encoding="utf-8")

    cfg = tmp_path / "transfer.toml"
    cfg.write_text(
        f'hcb_rrd_config = "{config_dir / "config_hcb_rrd.xml"}"\n'
        f'pwrusage_config = "{new_pwrusage}"\n',
        encoding="utf-8",
    )

    result = _run_cli(["--config", cfg, "-u", upload_dir, "-r", "--rra-dir", rra_dir, "-v"], tmp_path)

    assert result.returncode == 0, result.stdout
    assert result.stderr == ""
    assert read_ring_file(str(rra_dir / "aaa-5min.rra"), 5, SampleKind.INTEGER) == [5, 7, 9, 11, 12]
    assert (upload_dir / "elec_flow_quantity_5min.csv").exists()
    assert "<usage>100</usage>" in new_pwrusage.read_text(encoding="utf-8")
    assert "1 of 1 .dat files read and processed." in result.stdout
