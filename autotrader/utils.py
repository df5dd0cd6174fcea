"""
Utility functions for the trading loop.
Includes atomic file operations to prevent partial writes of state files.
"""
import json
import os
import tempfile
import shutil
import logging
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

logger = logging.getLogger(__name__)


def save_json_atomic(filepath: str, data: Any, indent: int = 2):
    """
    Save JSON data atomically to avoid partial writes or race conditions.
    Writes to a temp file first, then renames it to the target file.
    """
    dir_name = os.path.dirname(filepath)
    if dir_name:
        os.makedirs(dir_name, exist_ok=True)

    # Temp file in the same directory so the rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(dir=dir_name or None, text=True)

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=indent, ensure_ascii=False, default=str)
            f.flush()
            os.fsync(f.fileno())

        shutil.move(temp_path, filepath)

    except Exception as e:
        logger.error(f"Error saving JSON atomically to {filepath}: {e}")
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError as cleanup_error:
                logger.debug(f"Temp file {temp_path} not removed: {cleanup_error}")
        raise


def load_json_safe(filepath: str, default: Any = None, retries: int = 3, delay: float = 0.1) -> Any:
    """
    Load JSON data safely with retries.
    """
    if default is None:
        default = {}

    if not os.path.exists(filepath):
        return default

    for i in range(retries):
        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError:
            if i == retries - 1:
                logger.error(f"JSON decode error in {filepath}")
                return default
            time.sleep(delay)
        except OSError as e:
            logger.error(f"Error loading {filepath}: {e}")
            return default

    return default


def utc_now() -> datetime:
    """Horario atual com timezone UTC."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Converte ISO string, epoch (s ou ms) ou datetime em datetime UTC.
    Retorna None para valores vazios ou invalidos.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Epoch em ms (exchange) ou segundos
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def setup_rotating_logger(
    name: str,
    log_file: str,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 5,
    level: int = logging.INFO
) -> logging.Logger:
    """
    Configura um logger com rotação automática de arquivos.

    Args:
        name: Nome do logger ('' para o root logger)
        log_file: Caminho do arquivo de log
        max_bytes: Tamanho máximo do arquivo antes de rotacionar
        backup_count: Número de arquivos de backup a manter
        level: Nível de logging

    Returns:
        Logger configurado
    """
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log = logging.getLogger(name)
    log.setLevel(level)

    # Evitar handlers duplicados
    if not any(isinstance(h, RotatingFileHandler) for h in log.handlers):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        formatter = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)

    return log
