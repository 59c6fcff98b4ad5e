"""
Logging setup and configuration for org-federation.

This module provides centralized logging configuration with file rotation,
retention policies, scrubbing of credentials, and a security audit logger
for authentication and identity write-back events.
"""

import os
import sys
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'client_secret',
        'credential', 'pwd', 'authorization', 'access_token', 'refresh_token'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern1 = rf'({keyword}\s*=\s*)[^\s,}}\]&]+'
                msg = re.sub(pattern1, r'\1****', msg, flags=re.IGNORECASE)

            # "key": "value" and "key": value in JSON
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern2 = rf'("{keyword}"\s*:\s*")[^"]*(")'
                msg = re.sub(pattern2, r'\1****\2', msg, flags=re.IGNORECASE)

                pattern3 = rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])'
                msg = re.sub(pattern3, r'\1****\3', msg, flags=re.IGNORECASE)

            # Authorization: Bearer <token>
            msg = re.sub(r'(Bearer\s+)[^\s,}\]]+', r'\1****', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class LoggingManager:
    """
    Owns the handlers org-federation installs.

    The run log (``org_federation.log``) receives every logger at the
    configured level. Audit events from the ``security`` logger are also
    copied to ``audit.log`` so they can be retained and shipped separately.
    Console output goes to stderr because the CLI prints its results as JSON
    on stdout.
    """

    LOG_FILE = 'org_federation.log'
    AUDIT_FILE = 'audit.log'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self.audit_handler = None

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Install file, audit and console handlers from the ``logging`` section.

        Calling it again before reset() is a no-op.
        """
        if self.configured:
            return

        logging_config = config or {}
        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        self.retention_days = logging_config.get('retention_days', 7)
        rotation = logging_config.get('rotation', 'daily')
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        scrubber = SensitiveDataFilter()
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        run_handler = self._file_handler(self.LOG_FILE, rotation)
        run_handler.setLevel(getattr(logging, log_level, logging.INFO))
        run_handler.setFormatter(file_formatter)
        run_handler.addFilter(scrubber)
        root_logger.addHandler(run_handler)

        self.audit_handler = self._file_handler(self.AUDIT_FILE, rotation)
        self.audit_handler.setLevel(logging.INFO)
        self.audit_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s', datefmt='%Y-%m-%dT%H:%M:%S'
        ))
        self.audit_handler.addFilter(scrubber)
        audit_logger = logging.getLogger('security')
        audit_logger.setLevel(logging.INFO)
        audit_logger.addHandler(self.audit_handler)

        if console_enabled:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter('%(levelname)s %(name)s: %(message)s'))
            console_handler.addFilter(scrubber)
            root_logger.addHandler(console_handler)

        self._remove_expired_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level} dir={self.log_dir} "
            f"retention={self.retention_days}d console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Could not create log directory {self.log_dir} ({e}), logging to current directory\n")
            self.log_dir = '.'

    def _file_handler(self, filename: str, rotation: str) -> logging.Handler:
        path = os.path.join(self.log_dir, filename)
        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=path, when='midnight', interval=1,
                backupCount=self.retention_days, encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(path, encoding='utf-8')

    def _remove_expired_logs(self) -> None:
        """Delete rotated run and audit logs older than retention_days."""
        if self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for base in (self.LOG_FILE, self.AUDIT_FILE):
            for path in glob.glob(os.path.join(self.log_dir, base + '.*')):
                try:
                    if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                        os.remove(path)
                except OSError as e:
                    sys.stderr.write(f"Could not remove expired log {path}: {e}\n")

    def reset(self) -> None:
        """Close every installed handler so setup_logging can run again."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)
        if self.audit_handler is not None:
            self.audit_handler.close()
            logging.getLogger('security').removeHandler(self.audit_handler)
            self.audit_handler = None
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_authentication_attempt(self, target: str, principal: str, success: bool):
        """Log authentication attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: target={target} principal={principal}")

    def log_identity_update(self, entity_kind: str, entity_id: str, target: str, count: int, success: bool):
        """Log external-identity write-backs for audit trail."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"External identity update {status}: {entity_kind}={entity_id} "
                         f"target={target} identities={count}")

    def log_department_created(self, target: str, parent_id: str, department_id: str, linked: bool):
        """Log department creation; unlinked groups are flagged for follow-up."""
        if linked:
            self.logger.info(f"Department created: id={department_id} parent={parent_id} target={target}")
        else:
            self.logger.warning(f"Department created but not linked: id={department_id} "
                                f"parent={parent_id} target={target}")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")


security_logger = SecurityAuditLogger()
