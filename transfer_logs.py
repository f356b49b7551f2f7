#!/usr/bin/env python3
"""Import the logged history of an old hcb_rrd unit into a replacement unit.

Modes:
- -u DIR -e: DIR holds export.zip (as made by the unit's data export); it is
  unpacked and the interchange files in it are merged into the local
  databases.
- -u DIR -r: DIR holds the old unit's .rra/.dat files plus config_hcb_rrd.xml
  and config_happ_pwrusage.xml; monthly totals are merged, the old ring
  buffers are exported to interchange files and those are merged into the
  local databases.

Settings are read from ~/.transfer_logs.toml (see load_transfer_config);
command line options win over the file.
"""

import argparse
import dataclasses
import datetime
import os
import shlex
import shutil
import stat
import sys
import time
import zipfile
from typing import Any, Callable, Optional
from xml.etree import ElementTree

from pwrusage_merge import merge_pwrusage
from rra_codec import (
    DeviceRecord,
    SubsetRecord,
    atomic_write_bytes,
    export_subset,
    merge_subset,
    read_schema_file,
)

VERSION = "0.1.0"

E_DATABASE_DIR_NOT_FOUND = 255
E_INSUFFICIENT_CL_ARGS = 254
E_INVALID_DATA_DIR = 252
E_INVALID_END_DATE = 251
E_NO_DAT_FILES_FOUND = 250
E_CANNOT_OPEN_DIR = 249
E_EXPORTS_UNAVAILABLE = 1

SECONDS_PER_DAY = 86400

DEFAULT_RRA_LOCATIONS = ("/HCBv2/data/hcb_rrd/", "/qmf/var/hcb_rrd/")
DEFAULT_HCB_RRD_CONFIG = "/HCBv2/config/config_hcb_rrd.xml"
DEFAULT_PWRUSAGE_CONFIG = "/HCBv2/config/config_happ_pwrusage.xml"
DEFAULT_BACKUP_ROOT = "/HCBv2/rra_backups"

HCB_RRD_CONFIG_NAME = "config_hcb_rrd.xml"
PWRUSAGE_CONFIG_NAME = "config_happ_pwrusage.xml"
EXPORT_ARCHIVES = ("export.zip", "thermostat.zip", "usage.zip")
SCHEMA_SUFFIX = ".dat"


def parse_cutoff_date(text: Optional[str]) -> Optional[int]:
    """POSIX time of local midnight after `text` (YYYY-mm-dd), None for no limit."""
    if text is None or not text.strip():
        return None
    try:
        day = datetime.datetime.strptime(text.strip(), "%Y-%m-%d")
    except ValueError as exc:
        raise ValueError(f"Invalid date {text!r}, expected YYYY-mm-dd") from exc
    return int(time.mktime(day.timetuple())) + SECONDS_PER_DAY


def load_device_registry(xml_path: str) -> dict[str, str]:
    try:
        root = ElementTree.parse(xml_path).getroot()
    except ElementTree.ParseError as exc:
        raise ValueError(f"Unable to parse device registry {xml_path!r}: {exc}") from exc
    registry: dict[str, str] = {}
    for logger in root.findall("rrdLogger"):
        uuid = (logger.findtext("uuid") or "").strip()
        name = (logger.findtext("name") or "").strip()
        if uuid and name and uuid not in registry:
            registry[uuid] = name
    return registry


def resolve_device_name(registry_path: str, device_id: str) -> Optional[str]:
    return load_device_registry(registry_path).get(device_id)


def ring_buffer_path(rra_dir: str, device_id: str, interval: str) -> str:
    return os.path.join(rra_dir, f"{device_id}-{interval}.rra")


def interchange_path(csv_dir: str, record: DeviceRecord, index: int) -> Optional[str]:
    subset = record.subset(index)
    if not record.device_name:
        return None
    if record.device_name.startswith("thermstat"):
        name = f"{record.device_name}_{subset.interval}.csv"
    else:
        name = f"{record.device_name}_{record.device_var}_{subset.interval}.csv"
    return os.path.join(csv_dir, name)


def find_rra_databases(candidates: tuple[str, ...] = DEFAULT_RRA_LOCATIONS) -> Optional[str]:
    for candidate in candidates:
        if os.path.isdir(candidate):
            return candidate
    return None


def create_backups(
    rra_dir: str,
    backup_root: str = DEFAULT_BACKUP_ROOT,
    config_files: tuple[str, ...] = (DEFAULT_HCB_RRD_CONFIG, DEFAULT_PWRUSAGE_CONFIG),
    now: Optional[float] = None,
) -> str:
    stamp = int(now if now is not None else time.time())
    backup_dir = f"{backup_root}_{stamp}"
    os.makedirs(backup_dir, exist_ok=True)
    print(f"Creating database backups and restoration script in {backup_dir}")

    copied = 0
    for entry in sorted(os.listdir(rra_dir)):
        source = os.path.join(rra_dir, entry)
        if os.path.isfile(source):
            shutil.copy2(source, backup_dir)
            copied += 1
    print(f"copied {copied} database files from {rra_dir}")

    restore_lines = [
        "#! /bin/sh",
        "#",
        "# Script for backup restoration. Generated by transfer_logs",
        f"cp {shlex.quote(backup_dir)}/*.rra {shlex.quote(rra_dir)}",
        f"cp {shlex.quote(backup_dir)}/*.dat {shlex.quote(rra_dir)}",
    ]
    for config_file in config_files:
        if not os.path.isfile(config_file):
            print(f"Config file {config_file} not found, not backed up")
            continue
        shutil.copy2(config_file, backup_dir)
        saved = os.path.join(backup_dir, os.path.basename(config_file))
        restore_lines.append(f"cp {shlex.quote(saved)} {shlex.quote(os.path.dirname(config_file) or '.')}/")

    script_path = os.path.join(backup_dir, "restore_logs.sh")
    with open(script_path, "w", encoding="utf-8") as f:
        f.write("\n".join(restore_lines) + "\n")
    os.chmod(script_path, stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP)
    return backup_dir


def unzip_exports(path: str) -> list[str]:
    extracted: list[str] = []
    for archive_name in EXPORT_ARCHIVES:
        archive = os.path.join(path, archive_name)
        if not os.path.isfile(archive):
            raise FileNotFoundError(f"Unable to unzip {archive}: file not found")
        try:
            with zipfile.ZipFile(archive) as zf:
                names = zf.namelist()
                zf.extractall(path)
        except zipfile.BadZipFile as exc:
            raise ValueError(f"Unable to unzip {archive}: {exc}") from exc
        extracted.extend(names)
    return extracted


@dataclasses.dataclass
class BatchReport:
    found: int = 0
    processed: int = 0
    not_provisioned: int = 0
    failed: int = 0
    subsets_written: int = 0


SubsetAction = Callable[[DeviceRecord, int, str, SubsetRecord], str]


def _list_schema_files(directory: str) -> list[str]:
    with os.scandir(directory) as entries:
        return sorted(entry.name for entry in entries if entry.is_file() and entry.name.endswith(SCHEMA_SUFFIX))


def _load_registry_or_empty(registry_path: str) -> dict[str, str]:
    try:
        return load_device_registry(registry_path)
    except (OSError, ValueError) as exc:
        print(f"Unable to read device registry {registry_path}: {exc}")
        return {}


def _process_schema_files(
    directory: str,
    registry: dict[str, str],
    action: SubsetAction,
    verbose: int,
) -> BatchReport:
    report = BatchReport()
    for filename in _list_schema_files(directory):
        report.found += 1
        print(f"\nfound schema file : {filename}")
        device_id = filename[:-len(SCHEMA_SUFFIX)]
        try:
            record = read_schema_file(os.path.join(directory, filename))
        except (OSError, ValueError) as exc:
            print(f"Skipping {filename}: {exc}")
            report.failed += 1
            continue
        if not record.provisioned:
            print("Corresponding database(s) not yet initialised, continuing ...")
            report.not_provisioned += 1
            continue
        if record.corrupted:
            print(f"schema file is partly corrupted ({record.corruption}), continuing ...")

        record.device_name = registry.get(device_id)
        if verbose >= 2:
            record.dump()
        if not record.device_name:
            print(f"No device name registered for {device_id}, skipping")
            report.failed += 1
            continue

        ok = True
        for index in range(record.n_sets):
            subset = record.subset(index)
            if not subset.has_valid_geometry():
                print(
                    f"subset {index} ({subset.interval}): invalid ring geometry "
                    f"offset={subset.offset} n_samples={subset.n_samples}, skipping"
                )
                continue
            try:
                message = action(record, index, device_id, subset)
            except (OSError, ValueError) as exc:
                print(f"subset {index} ({subset.interval}): {exc}")
                ok = False
                continue
            if message:
                report.subsets_written += 1
                print(message)
        if ok:
            report.processed += 1
        else:
            report.failed += 1
    return report


def _print_report(report: BatchReport, directory: str) -> None:
    if report.found == 0:
        print(f"Cannot find any {SCHEMA_SUFFIX} files in {directory}: nothing importable found")
        return
    print(f"\n{report.processed} of {report.found} {SCHEMA_SUFFIX} files read and processed.")
    if report.not_provisioned or report.failed:
        print(f"not initialised: {report.not_provisioned}, failed: {report.failed}")


def rra_to_interchange(upload_dir: str, verbose: int = 0) -> BatchReport:
    registry = _load_registry_or_empty(os.path.join(upload_dir, HCB_RRD_CONFIG_NAME))

    def export(record: DeviceRecord, index: int, device_id: str, subset: SubsetRecord) -> str:
        csv_path = interchange_path(upload_dir, record, index)
        rra_path = ring_buffer_path(upload_dir, device_id, subset.interval)
        if verbose:
            print(f"rra_path        : {rra_path}")
            print(f"csv_path        : {csv_path}")
        rows = export_subset(record, index, rra_path, csv_path)
        return f"exported {rows} samples to {csv_path}"

    report = _process_schema_files(upload_dir, registry, export, verbose)
    _print_report(report, upload_dir)
    return report


def inject_data(
    rra_dir: str,
    upload_dir: str,
    registry_path: str = DEFAULT_HCB_RRD_CONFIG,
    cutoff: Optional[int] = None,
    verbose: int = 0,
) -> BatchReport:
    registry = _load_registry_or_empty(registry_path)
    # the unit may still hold ring writes in its page cache
    os.sync()

    def merge(record: DeviceRecord, index: int, device_id: str, subset: SubsetRecord) -> str:
        csv_path = interchange_path(upload_dir, record, index)
        rra_path = ring_buffer_path(rra_dir, device_id, subset.interval)
        if verbose:
            print(f"csv_path        : {csv_path}")
            print(f"rra_path        : {rra_path}")
        if csv_path is None or not os.path.isfile(csv_path):
            print(f"No interchange data {csv_path}, keeping {rra_path} unchanged")
            return ""
        result = merge_subset(record, index, rra_path, csv_path, cutoff)
        if result.skipped_rows:
            print(f"ignored {result.skipped_rows} malformed rows in {csv_path}")
        if verbose:
            print(f"slots={result.slots} candidates={result.candidates} changed={result.changed}")
        return f"merged {csv_path} into {rra_path} ({result.changed} slots changed)"

    report = _process_schema_files(rra_dir, registry, merge, verbose)
    _print_report(report, rra_dir)
    return report


def _resolve_config_path_for_read() -> str:
    return os.path.expanduser("~/.transfer_logs.toml")


def _load_toml_dict(path: str) -> dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        import tomllib  # Python 3.11+
    except ImportError:  # pragma: no cover - fallback if tomllib missing
        import toml as tomllib  # type: ignore
    try:
        # text mode: toml.load does not accept binary handles
        with open(path, "r", encoding="utf-8") as f:
            data = tomllib.loads(f.read())
    except Exception as exc:
        print(f"Ignoring unreadable config file {path}: {exc}")
        return {}
    return data if isinstance(data, dict) else {}


def _config_text(data: dict[str, Any], keys: tuple[str, ...], default: str) -> str:
    for key in keys:
        if key in data and str(data[key]).strip():
            return str(data[key]).strip()
    return default


def load_transfer_config(rc_path: str) -> dict[str, str]:
    data = _load_toml_dict(rc_path)
    return {
        "rra_dir": _config_text(data, ("rra_dir", "rra-dir"), ""),
        "hcb_rrd_config": _config_text(data, ("hcb_rrd_config", "hcb-rrd-config"), DEFAULT_HCB_RRD_CONFIG),
        "pwrusage_config": _config_text(data, ("pwrusage_config", "pwrusage-config"), DEFAULT_PWRUSAGE_CONFIG),
        "backup_root": _config_text(data, ("backup_root", "backup-root"), DEFAULT_BACKUP_ROOT),
        "upload_dir": _config_text(data, ("upload_dir", "upload-dir"), ""),
    }


def save_transfer_config(rc_path: str, config: dict[str, str]) -> None:
    import toml  # type: ignore

    parent = os.path.dirname(os.path.abspath(rc_path))
    os.makedirs(parent, exist_ok=True)
    data = {key: value for key, value in config.items() if value}
    atomic_write_bytes(rc_path, toml.dumps(data).encode("utf-8"), prefix=".transfer_logs_")


def main(argv: Optional[list[str]] = None) -> int:
    default_config_path = _resolve_config_path_for_read()
    parser = argparse.ArgumentParser(
        description="Import logged usage history of an old unit into the ring-buffer databases of a new one.",
    )
    parser.add_argument(
        "--config",
        default=default_config_path,
        help=f"Path to config file (default: {default_config_path})",
    )
    parser.add_argument("-u", "--upload-dir", help="Directory holding the data to import")
    parser.add_argument("-e", "--exports", action="store_true", help="Unpack export.zip in the upload directory and import it")
    parser.add_argument(
        "-r",
        "--rra",
        action="store_true",
        help="Import old .rra/.dat files, config_hcb_rrd.xml and config_happ_pwrusage.xml from the upload directory",
    )
    parser.add_argument("-L", "--limit", metavar="DATE", help="Import data until and including DATE (YYYY-mm-dd)")
    parser.add_argument("-b", "--backup", action="store_true", help="Back up databases and config files first, with a restore script")
    parser.add_argument("--rra-dir", help="Database directory of this unit. If omitted, read rra_dir from config or probe defaults")
    parser.add_argument("--dump-dat", metavar="DATFILE", help="Print a decoded schema (.dat) file and exit")
    parser.add_argument("--save-config", action="store_true", help="Store the given directories in the config file and exit")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (can be repeated)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    # echo the call, stdout is usually redirected to a log file
    print(" ".join([os.path.basename(sys.argv[0])] + list(argv if argv is not None else sys.argv[1:])))

    rc_path = os.path.expanduser(args.config)
    config = load_transfer_config(rc_path)

    if args.dump_dat:
        try:
            record = read_schema_file(args.dump_dat)
        except (OSError, ValueError) as exc:
            print(f"Failed to read schema file {args.dump_dat!r}: {exc}")
            return 2
        record.dump()
        return 0

    if args.save_config:
        if args.rra_dir:
            config["rra_dir"] = os.path.abspath(os.path.expanduser(args.rra_dir))
        if args.upload_dir:
            config["upload_dir"] = os.path.abspath(os.path.expanduser(args.upload_dir))
        save_transfer_config(rc_path, config)
        print(f"saved config to {rc_path}")
        return 0

    upload_dir = args.upload_dir or config["upload_dir"]
    if not upload_dir or args.exports == args.rra:
        print("Error: Insufficient or invalid command line arguments (need -u DIR and one of -e, -r)")
        parser.print_usage(sys.stdout)
        return E_INSUFFICIENT_CL_ARGS
    upload_dir = os.path.abspath(os.path.expanduser(upload_dir))
    if not os.path.isdir(upload_dir):
        print(f"Error: upload directory not found: {upload_dir}")
        return E_INVALID_DATA_DIR

    try:
        cutoff = parse_cutoff_date(args.limit)
    except ValueError as exc:
        print(f"Error: {exc}")
        return E_INVALID_END_DATE

    rra_dir = args.rra_dir or config["rra_dir"]
    if rra_dir:
        rra_dir = os.path.abspath(os.path.expanduser(rra_dir))
        if not os.path.isdir(rra_dir):
            rra_dir = ""
    else:
        rra_dir = find_rra_databases() or ""
    if not rra_dir:
        print("Cannot find database directory")
        return E_DATABASE_DIR_NOT_FOUND
    print(f"rra database location: {rra_dir}")

    if args.backup:
        try:
            create_backups(
                rra_dir,
                config["backup_root"],
                (config["hcb_rrd_config"], config["pwrusage_config"]),
            )
        except OSError as exc:
            print(f"Failed to create backups: {exc}")
            return 2
        print("Back-up completed.")

    try:
        if args.rra:
            old_pwrusage = os.path.join(upload_dir, PWRUSAGE_CONFIG_NAME)
            try:
                merge_pwrusage(old_pwrusage, config["pwrusage_config"], cutoff=cutoff, verbose=args.verbose)
            except (OSError, ValueError) as exc:
                print(f"Monthly data not merged: {exc}")
            print(f"Converting old .rra files in {upload_dir} to .csv format")
            exported = rra_to_interchange(upload_dir, verbose=args.verbose)
            if exported.found == 0:
                return E_NO_DAT_FILES_FOUND
        else:
            print(f"Processing export.zip file in {upload_dir}")
            try:
                unzip_exports(upload_dir)
            except (OSError, ValueError) as exc:
                print(f"Error: {exc}")
                return E_EXPORTS_UNAVAILABLE

        if cutoff is not None:
            print(f"Processing data generated until {args.limit}, midnight")
        report = inject_data(rra_dir, upload_dir, config["hcb_rrd_config"], cutoff=cutoff, verbose=args.verbose)
    except OSError as exc:
        print(f"Can't open directory: {exc}")
        return E_CANNOT_OPEN_DIR

    if report.found == 0:
        return E_NO_DAT_FILES_FOUND
    print("The new data become available after rebooting the unit.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
