import logging
import logging.config
from pathlib import Path
from typing import Dict, List, Optional

import structlog

#: Lines containing one of these markers are considered fatal daemon output.
ERROR_MARKERS = ("panicked at", "ERROR")
#: Lines containing one of these markers are noise, even if they look like errors.
IGNORED_MARKERS = ("metrics",)


def configure_logging(
    logger_level_config: Dict[str, str] = None,
    log_file: Optional[Path] = None,
    log_json: bool = False,
) -> None:
    """Route structlog through the stdlib logging machinery.

    Console output is rendered for humans (or as JSON, if `log_json` is set).
    If `log_file` is given, a DEBUG level JSON log is written there as well.
    """
    logger_level_config = logger_level_config or {"": "INFO", "chain_forge": "INFO"}

    pre_chain = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S.%f"),
    ]
    console_renderer = (
        structlog.processors.JSONRenderer()
        if log_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    console_level = logger_level_config.get("chain_forge", "INFO")
    loggers = dict(logger_level_config)

    handlers = {
        "default": {
            "class": "logging.StreamHandler",
            "level": console_level,
            "formatter": "console",
        }
    }
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["debug-file"] = {
            "class": "logging.FileHandler",
            "filename": str(log_file),
            "level": "DEBUG",
            "formatter": "json",
        }
        loggers["chain_forge"] = "DEBUG"

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": console_renderer,
                    "foreign_pre_chain": pre_chain,
                },
                "json": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": structlog.processors.JSONRenderer(),
                    "foreign_pre_chain": pre_chain,
                },
            },
            "handlers": handlers,
            "loggers": {
                name: {"handlers": list(handlers), "level": level, "propagate": False}
                for name, level in loggers.items()
            },
        }
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def collect_error_lines(log_path: Path, limit: int = 10) -> List[str]:
    """Return the last `limit` error or panic lines of a daemon log file.

    Missing or unreadable files yield an empty list.
    """
    try:
        content = Path(log_path).read_text(errors="replace")
    except OSError:
        return []

    error_lines = [
        line.strip()
        for line in content.splitlines()
        if any(marker in line for marker in ERROR_MARKERS)
        and not any(marker in line for marker in IGNORED_MARKERS)
    ]
    return error_lines[-limit:]
