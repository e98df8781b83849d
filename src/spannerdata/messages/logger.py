"""
Logging configuration for spannerdata - readable, colour-coded driver output.

SpannerLogger gives every pool, connection and transaction a named logger
that writes to the console and to a log file. Pool loggers are named after the
database they serve so interleaved output from several pools stays readable.
"""
import logging
import sys
from pathlib import Path
from typing import Optional

import colorama

# Initialize colorama for cross-platform color support
colorama.init()


class ColorFormatter(logging.Formatter):
    """Custom formatter with colors"""

    COLORS = {
        "INFO": colorama.Fore.BLUE,
        "WARNING": colorama.Fore.YELLOW,
        "ERROR": colorama.Fore.RED,
        "DEBUG": colorama.Fore.BLUE,
        "START": colorama.Fore.BLUE,
        "OK": colorama.Fore.GREEN,
    }

    def format(self, record):
        # spannerdata.pool.projects/p/instances/i/databases/orders -> [orders]
        if record.name.startswith("spannerdata.pool."):
            database = record.name.rsplit("/", 1)[-1]
            white = colorama.Fore.WHITE
            reset = colorama.Style.RESET_ALL
            record.scope_name = f"{white}[{database}]{reset} "
        else:
            record.scope_name = ""

        if record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{colorama.Style.RESET_ALL}"

        if hasattr(record, "color_prefix"):
            color = self.COLORS.get(record.color_prefix, "")
            record.msg = f"{color}{record.msg}{colorama.Style.RESET_ALL}"

        return super().format(record)


class SpannerLogger:
    """
    Central logging class for spannerdata.

    Wraps a standard library logger. Handlers are installed once per logger
    name, so asking for the same name twice shares the underlying logger.
    The wrapped logger is available as ``.logger`` for libraries (tenacity)
    that need a plain ``logging.Logger``.
    """

    class Style:
        """ANSI color codes for identifiers"""

        CYAN = colorama.Fore.CYAN
        GREEN = colorama.Fore.GREEN
        YELLOW = colorama.Fore.YELLOW
        RESET = colorama.Style.RESET_ALL

    # Latency template for RPC timing lines
    RPC_TEMPLATE = "{} took {:.1f}ms"

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.style = self.Style()

        # Only set up handlers if they haven't been set up already
        if not self.logger.handlers:
            self.logger.setLevel(logging.INFO)

            log_dir = Path.cwd() / "logs"
            log_dir.mkdir(exist_ok=True)

            file_handler = logging.FileHandler(
                log_dir / "spannerdata.log", encoding="utf-8"
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s  %(name)s  %(message)s", datefmt="%H:%M:%S"
                )
            )

            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(
                ColorFormatter(
                    "%(asctime)s  %(scope_name)s%(message)s", datefmt="%H:%M:%S"
                )
            )

            self.logger.addHandler(file_handler)
            self.logger.addHandler(console_handler)

            # Prevent logs from being passed to root logger
            self.logger.propagate = False

    def info(self, msg: str, color_prefix: Optional[str] = None) -> None:
        """Log info message with optional color prefix"""
        extra = {"color_prefix": color_prefix} if color_prefix else None
        self.logger.info(msg, extra=extra)

    def start(self, msg: str) -> None:
        """Log start message"""
        self.info(f"START {msg}", color_prefix="START")

    def success(self, msg: str) -> None:
        """Log success message in green"""
        self.info(f"OK {msg}", color_prefix="OK")

    def error(self, msg: str) -> None:
        """Log error message in red"""
        self.logger.error(msg)

    def warning(self, msg: str) -> None:
        """Log warning message in yellow"""
        self.logger.warning(msg)

    def debug(self, msg: str) -> None:
        """Log debug message in blue"""
        self.logger.debug(msg)

    def rpc(self, operation: str, elapsed: float) -> None:
        """Log how long an RPC took (elapsed in seconds) at debug level"""
        self.logger.debug(self.RPC_TEMPLATE.format(operation, elapsed * 1000))

    def name(self, value: str, color: Optional[str] = None) -> str:
        """Format a resource name (session, database) with color"""
        if not color:
            color = self.style.CYAN
        return f"{color}{value}{self.style.RESET}"


def get_logger(name: str) -> SpannerLogger:
    """Get a configured logger instance."""
    return SpannerLogger(name)
