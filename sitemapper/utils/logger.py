from loguru import logger
import os

_logger_initialized = False
_sink_ids: list[int] = []

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | job={extra[job_id]} | {message}"


def setup_logger(log_level: str = "INFO", log_path: str | None = "logs/sitemapper.log", job_id: str = "-"):
    """Install the file and console sinks once and return a logger bound to ``job_id``."""
    global _logger_initialized, _sink_ids

    if not _logger_initialized:
        logger.remove()
        logger.configure(extra={"job_id": "-"})

        if log_path:
            os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
            _sink_ids.append(
                logger.add(
                    log_path,
                    rotation="10 MB",
                    retention="7 days",
                    level=log_level,
                    format=LOG_FORMAT,
                )
            )

        _sink_ids.append(
            logger.add(
                lambda msg: print(msg, end=""),
                colorize=True,
                level=log_level,
                format=LOG_FORMAT,
            )
        )
        _logger_initialized = True

    return logger.bind(job_id=job_id)
