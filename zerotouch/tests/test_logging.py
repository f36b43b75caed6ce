import logging
import re

from zerotouch.logging import COMPLETION_SENTINEL, ROOT_LOGGER, log_header, setup_logging

LINE = re.compile(r"^\[(INFO|WARNING|ERROR|DEBUG)\] \[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:\d{2}\] .+$")


def test_lines_have_level_and_iso_timestamp(tmp_path):
    log_file = tmp_path / "bootstrap.log"
    setup_logging(log_file, console=False)

    logging.getLogger("zerotouch.pipeline").info("[1/3] Verifying network")
    logging.getLogger("zerotouch.pipeline").error("Stage 'network' failed after 25s: unreachable")

    lines = log_file.read_text().splitlines()
    assert len(lines) == 2
    assert all(LINE.match(line) for line in lines)
    assert lines[1].startswith("[ERROR] ")


def test_log_file_is_appended(tmp_path):
    log_file = tmp_path / "var" / "log" / "bootstrap.log"
    log_file.parent.mkdir(parents=True)
    log_file.write_text("previous boot\n")

    setup_logging(log_file, console=False)
    logging.getLogger("zerotouch.orchestrator").info(COMPLETION_SENTINEL)

    lines = log_file.read_text().splitlines()
    assert lines[0] == "previous boot"
    assert lines[-1].endswith(COMPLETION_SENTINEL)


def test_repeated_setup_does_not_duplicate_handlers(tmp_path):
    setup_logging(tmp_path / "a.log")
    logger = setup_logging(tmp_path / "a.log")

    assert len(logger.handlers) == 2
    assert logger is logging.getLogger(ROOT_LOGGER)


def test_debug_level_from_name(tmp_path):
    logger = setup_logging(level="debug", console=False)

    assert logger.level == logging.DEBUG
    assert logger.handlers == []


def test_header_lines(tmp_path):
    log_file = tmp_path / "bootstrap.log"
    setup_logging(log_file, console=False)

    log_header(logging.getLogger("zerotouch.orchestrator"), "NODE 1 INITIALIZATION STARTING")

    messages = [line.split("] ", 2)[2] for line in log_file.read_text().splitlines()]
    assert messages == ["=" * 74, "NODE 1 INITIALIZATION STARTING", "=" * 74]
