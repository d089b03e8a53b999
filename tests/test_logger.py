from __future__ import annotations

import logging
from pathlib import Path

from restic_backup.logger import RUN_SEPARATOR, configure_logging, flatten, get_logger, write_separator


def test_multiline_messages_become_one_line(tmp_path: Path):
    log_file = tmp_path / "logs" / "backup.log"
    configure_logging("INFO", log_file)

    logging.getLogger("restic_backup.runner").info("open repository\nlock repository\n")
    write_separator()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("restic_backup.runner: open repository   lock repository")
    assert "\tINFO " in lines[0]
    assert lines[1] == RUN_SEPARATOR


def test_log_file_is_appended(tmp_path: Path):
    log_file = tmp_path / "backup.log"
    log_file.write_text("previous run\n", encoding="utf-8")

    configure_logging("INFO", log_file)
    logging.getLogger("restic_backup").warning("next run")

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "previous run"
    assert lines[1].endswith("next run")


def test_unopenable_log_file_falls_back_to_console(tmp_path: Path, capsys):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")

    logger = configure_logging("INFO", blocker / "backup.log")
    logger.info("still logging")

    assert all(not isinstance(handler, logging.FileHandler) for handler in logger.handlers)
    out = capsys.readouterr().out
    assert "Could not open log file" in out
    assert "still logging" in out


def test_flatten_handles_carriage_returns():
    assert flatten("a\r\nb\rc\n") == "a   b   c"


def test_get_logger_stays_under_package_logger(tmp_path: Path):
    log_file = tmp_path / "backup.log"
    configure_logging("INFO", log_file)

    get_logger("__main__").info("started as a script")

    assert get_logger("restic_backup.cli").name == "restic_backup.cli"
    assert get_logger("__main__").name == "restic_backup.main"
    assert "restic_backup.main: started as a script" in log_file.read_text(encoding="utf-8")
