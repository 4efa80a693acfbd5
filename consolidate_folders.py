#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
consolidate_folders.py

Merge one same-named CSV file per folder into a single output CSV.

Input:
- <root>/<folder>/<filename> for every folder given in --folders (in order)
- Each file: first line is a header, remaining lines are data rows

Output:
- One CSV (default: output.csv)
    <column>,<header of first available input>
    <folder>,<row>            (for every row of every processed folder)
- Optional per-folder report CSV (--report, utf-8-sig)

Rules:
- Rows are opaque text lines; nothing is parsed or validated
- The header is written once; later headers are dropped
- Missing input: abort the run (--error panic, default) or skip the folder (--error skip)
- Permission / OS errors on an input are always fatal
- Body lines that are not valid UTF-8 are silently dropped
- Output is buffered in memory and written once at the end

Dependencies:
- pandas (report CSV)
"""

from __future__ import annotations

import argparse
import enum
import logging
import os
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Tuple

import pandas as pd


__version__ = "0.1.0"

DEFAULT_ROOT = "./"
DEFAULT_OUTPUT = "output.csv"
FOLDER_SEPARATOR = ","
ENCODING = "utf-8"

LOGGER_NAME = "consolidate_folders"


# ------
# Errors
# ------

class ConsolidateError(Exception):
    """Base class for fatal conditions; `folder` names the offending folder when known."""

    def __init__(self, message: str, folder: Optional[str] = None):
        super().__init__(message)
        self.folder = folder


class OutputCreateError(ConsolidateError):
    pass


class OutputWriteError(ConsolidateError):
    pass


class InputMissingError(ConsolidateError):
    pass


class InputAccessError(ConsolidateError):
    pass


class InputReadError(ConsolidateError):
    pass


class LogSetupError(ConsolidateError):
    pass


# -------------
# Data classes
# -------------

class ErrorMode(enum.Enum):
    PANIC = "panic"
    SKIP = "skip"


@dataclass(frozen=True)
class RunConfig:
    filename: str
    folders: Tuple[str, ...]
    column: str
    root: Path = Path(DEFAULT_ROOT)
    output: Path = Path(DEFAULT_OUTPUT)
    verbose: bool = False
    error_mode: ErrorMode = ErrorMode.PANIC
    report: Optional[Path] = None
    log_file: Optional[Path] = None
    debug: bool = False


@dataclass
class FolderReport:
    folder: str
    path: str
    status: str
    header_used: bool
    rows_written: int
    rows_dropped: int


# ----------
# Logging
# ----------

def setup_logging(debug: bool, log_file: Optional[Path] = None) -> logging.Logger:
    """
    Attach the console handler (once) and the optional file handler (once per path).
    Repeated calls re-apply the level to every attached handler.
    Raises LogSetupError if the log file cannot be opened; the console handler is
    already attached by then, so the error can still be logged.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # FileHandler subclasses StreamHandler, hence the exact type check
    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(fmt)
        logger.addHandler(sh)

    if log_file is not None:
        target = os.path.abspath(log_file)
        attached = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        if not any(h.baseFilename == target for h in attached):
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                fh = logging.FileHandler(log_file, encoding="utf-8")
            except OSError as e:
                raise LogSetupError(f"Cannot open log file '{log_file}': {e}") from e
            fh.setFormatter(fmt)
            logger.addHandler(fh)

    for h in logger.handlers:
        h.setLevel(logging.DEBUG if debug else logging.INFO)
    return logger


# --------------
# Configuration
# --------------

def split_folders(folders: str) -> Tuple[str, ...]:
    # No trimming: "a, b" yields " b", and "a,,b" keeps the empty name.
    return tuple(folders.split(FOLDER_SEPARATOR))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Merge <root>/<folder>/<filename> for each folder into one CSV, prefixing every row with its folder name."
    )
    parser.add_argument("-f", "--filename", required=True, help="Name of the CSV file to read inside every folder")
    parser.add_argument("-F", "--folders", required=True, help="Comma-separated folder names, processed in this order")
    parser.add_argument("-c", "--column", required=True, help="Header label of the added folder column")
    parser.add_argument("-r", "--root", default=DEFAULT_ROOT, help=f"Directory containing the folders (default: {DEFAULT_ROOT})")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT, help=f"Output CSV (default: {DEFAULT_OUTPUT})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Report progress for every folder")
    parser.add_argument(
        "-e",
        "--error",
        default=ErrorMode.PANIC.value,
        choices=[m.value for m in ErrorMode],
        help="What to do when a folder has no input file (default: panic)",
    )
    parser.add_argument("--report", default=None, help="Optional per-folder report CSV")
    parser.add_argument("--log-file", default=None, help="Also write the log to this file")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> RunConfig:
    args = build_parser().parse_args(argv)
    return RunConfig(
        filename=args.filename,
        folders=split_folders(args.folders),
        column=args.column,
        root=Path(args.root),
        output=Path(args.output),
        verbose=args.verbose,
        error_mode=ErrorMode(args.error),
        report=Path(args.report) if args.report else None,
        log_file=Path(args.log_file) if args.log_file else None,
        debug=args.debug,
    )


# -------------
# File access
# -------------

def create_output(path: Path) -> BinaryIO:
    """Create (or truncate) the output file; it stays open until the final write."""
    try:
        return open(path, "wb")
    except PermissionError as e:
        raise OutputCreateError(f"Cannot create output '{path}': permission denied") from e
    except OSError as e:
        raise OutputCreateError(f"Cannot create output '{path}': {e}") from e


def input_path(config: RunConfig, folder: str) -> Path:
    return config.root / folder / config.filename


def open_input(config: RunConfig, folder: str) -> Optional[BinaryIO]:
    """
    Open <root>/<folder>/<filename> for reading.
    Returns None when the file does not exist; any other failure is fatal.
    """
    path = input_path(config, folder)
    try:
        return open(path, "rb")
    except (FileNotFoundError, NotADirectoryError):
        # <root>/<folder> missing or not a directory: the file cannot exist
        return None
    except PermissionError as e:
        raise InputAccessError(f"Folder '{folder}': permission denied reading '{path}'", folder=folder) from e
    except OSError as e:
        raise InputReadError(f"Folder '{folder}': cannot open '{path}': {e}", folder=folder) from e


def read_header(fh: BinaryIO, folder: str) -> Optional[str]:
    """
    Read the first line of an input. Returns None for an empty file.
    Line endings are normalized to '\\n'; a header without one gets it appended.
    """
    try:
        raw = fh.readline()
    except OSError as e:
        raise InputReadError(f"Folder '{folder}': failed reading header: {e}", folder=folder) from e

    if not raw:
        return None

    try:
        header = raw.decode(ENCODING)
    except UnicodeDecodeError as e:
        raise InputReadError(f"Folder '{folder}': header is not valid {ENCODING}: {e}", folder=folder) from e

    header = header.replace("\r\n", "\n")
    if not header.endswith("\n"):
        header += "\n"
    return header


def read_body(fh: BinaryIO, folder: str) -> Tuple[List[str], int]:
    """
    Read the remaining lines (terminators stripped).
    Undecodable lines are dropped and only counted.
    """
    lines: List[str] = []
    dropped = 0
    try:
        for raw in fh:
            if raw.endswith(b"\n"):
                raw = raw[:-1]
                if raw.endswith(b"\r"):
                    raw = raw[:-1]
            try:
                lines.append(raw.decode(ENCODING))
            except UnicodeDecodeError:
                dropped += 1
    except OSError as e:
        raise InputReadError(f"Folder '{folder}': failed reading rows: {e}", folder=folder) from e
    return lines, dropped


# -------------------
# Per-folder pipeline
# -------------------

def process_folder(
    config: RunConfig,
    folder: str,
    header_emitted: bool,
    buffer: List[str],
    logger: logging.Logger,
) -> Tuple[bool, FolderReport]:
    """
    Append one folder's contribution to `buffer`.
    Returns the updated header state and the folder's report row.
    """
    path = input_path(config, folder)
    logger.debug(f"Folder '{folder}': resolving {path}")

    fh = open_input(config, folder)
    if fh is None:
        if config.error_mode is ErrorMode.PANIC:
            raise InputMissingError(
                f"Folder '{folder}': '{config.filename}' not found at {path}",
                folder=folder,
            )
        if config.verbose:
            logger.info(f"folder '{folder}': file not found, skipping")
        return header_emitted, FolderReport(
            folder=folder,
            path=str(path),
            status="skipped",
            header_used=False,
            rows_written=0,
            rows_dropped=0,
        )

    header_used = False
    with fh:
        header = read_header(fh, folder)
        if header is None:
            logger.warning(f"Folder '{folder}': {path} is empty, nothing to merge")
            lines: List[str] = []
            dropped = 0
        else:
            if not header_emitted:
                buffer.append(f"{config.column},{header}")
                header_emitted = True
                header_used = True
            lines, dropped = read_body(fh, folder)

    for line in lines:
        buffer.append(f"{folder},{line}\n")

    if dropped:
        logger.debug(f"Folder '{folder}': dropped {dropped} undecodable line(s)")
    if config.verbose:
        logger.info(f"{folder} written to {config.output} successfully!")

    return header_emitted, FolderReport(
        folder=folder,
        path=str(path),
        status="merged",
        header_used=header_used,
        rows_written=len(lines),
        rows_dropped=dropped,
    )


def aggregate(config: RunConfig, logger: logging.Logger) -> Tuple[List[str], List[FolderReport]]:
    """Run every folder in order; returns the line buffer and the per-folder reports."""
    buffer: List[str] = []
    reports: List[FolderReport] = []
    header_emitted = False

    for folder in config.folders:
        header_emitted, rep = process_folder(config, folder, header_emitted, buffer, logger)
        reports.append(rep)

    return buffer, reports


def write_report(reports: List[FolderReport], path: Path, logger: logging.Logger) -> None:
    rep_df = pd.DataFrame([asdict(r) for r in reports])
    if rep_df.empty:
        rep_df = pd.DataFrame(columns=[f.name for f in FolderReport.__dataclass_fields__.values()])
    try:
        rep_df.to_csv(path, index=False, encoding="utf-8-sig")
    except OSError as e:
        raise OutputWriteError(f"Failed writing report '{path}': {e}") from e
    logger.info(f"Wrote folder report: {path.resolve()} rows={len(rep_df)}")


def run(config: RunConfig, logger: logging.Logger) -> List[FolderReport]:
    """
    Create the output, aggregate every folder, then flush the buffer in one write.
    Raises ConsolidateError on any fatal condition; nothing is flushed in that case.
    """
    out = create_output(config.output)
    try:
        with out:
            buffer, reports = aggregate(config, logger)
            out.write("".join(buffer).encode(ENCODING))
            # small payloads sit in the write buffer until flushed
            out.flush()
    except OSError as e:
        raise OutputWriteError(f"Failed writing output '{config.output}': {e}") from e

    merged = [r for r in reports if r.status == "merged"]
    logger.info(
        f"Wrote {config.output} folders={len(merged)}/{len(reports)} "
        f"rows={sum(r.rows_written for r in merged)}"
    )

    if config.report is not None:
        write_report(reports, config.report, logger)
    return reports


# -----
# Main
# -----

def main(argv: Optional[Sequence[str]] = None) -> None:
    config = parse_args(argv)

    try:
        logger = setup_logging(config.debug, config.log_file)
        run(config, logger)
    except ConsolidateError as e:
        logging.getLogger(LOGGER_NAME).error(str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
