import logging
from pathlib import Path
from typing import List, Optional

from rich.logging import RichHandler

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logging(
    data_dir: Path,
    debug: bool = False,
    log_path: Optional[Path] = None,
    console: bool = False,
) -> logging.Logger:
    """
    Configure logging for Archivist.

    Everything goes to archivist.log in the data directory (or `log_path`).
    With `console`, warnings and errors are also echoed to stderr through
    rich so they do not tear the scan progress bar.

    Args:
        data_dir: Directory holding the library file and the default log
        debug: If True, log per-file scan decisions and skipped directories
        log_path: Optional path to log file (overrides data_dir)
        console: Also show WARNING+ records on the terminal
    """
    data_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (data_dir / "archivist.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers: List[logging.Handler] = [file_handler]

    if console:
        console_handler = RichHandler(show_path=False, rich_tracebacks=False)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(console_handler)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=handlers,
        force=True,  # replace whatever an earlier command configured
    )

    logger = logging.getLogger("archivist")
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")
    return logger
