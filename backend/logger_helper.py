import gzip
import logging
import os
import shutil
import time
from logging.handlers import RotatingFileHandler

from fastapi import Request

from config import LOG_FILE, LOG_LEVEL

LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # Keep last 5 log files
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _gzip_namer(name):
    return f"{name}.gz"


def _gzip_rotator(source, dest):
    with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
        shutil.copyfileobj(f_in, f_out)
    os.remove(source)


def setup_logger(log_file: str = LOG_FILE, level: str = LOG_LEVEL):
    """
    Configure the root logger with a console handler and a size-rotated file handler.
    Rotated files are gzip-compressed.
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in logger.handlers[:]:
        if getattr(handler, "_attendance_handler", False):
            logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._attendance_handler = True
    logger.addHandler(console)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.namer = _gzip_namer
        file_handler.rotator = _gzip_rotator
        file_handler.setFormatter(formatter)
        file_handler._attendance_handler = True
        logger.addHandler(file_handler)

    return logging.getLogger("performance_logger")


def create_logging_middleware(app, logger):
    """
    Adds a middleware to log request method, path, status and response time.
    Bodies are not logged; uploads are face images.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            "IP=%s | %s %s | Status=%s | Time=%.4fs",
            client_ip, request.method, request.url.path, response.status_code, process_time,
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
