"""
Secure Logging Utility

SECURITY REQUIREMENTS:
- Access tokens never appear unmasked in logs or audit details
- Structured logging for audit trails
- Sanitized error messages
"""

import re
import logging
import sys
import json
from typing import Optional, Dict, Any
from datetime import datetime, timezone

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

TOKEN_VISIBLE_CHARS = 4
TOKEN_MASK = "********"


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


def mask_token(value: Optional[str]) -> str:
    """
    Redacted form of a token: first few characters, fixed-width mask.

    The mask width does not depend on the input so the token length is not
    disclosed either.
    """
    if not value:
        return ""
    if len(value) <= TOKEN_VISIBLE_CHARS:
        return TOKEN_MASK
    return value[:TOKEN_VISIBLE_CHARS] + TOKEN_MASK


class SecureLogger:
    """
    Secure logging wrapper that prevents sensitive data leakage
    """

    SENSITIVE_PATTERNS = [
        r'password',
        r'secret',
        r'token',
        r'key',
        r'credential',
        r'session',
        r'qr',
        r'authorization',
        r'bearer',
    ]

    @staticmethod
    def sanitize_message(message: str) -> str:
        """
        Sanitize log message to remove sensitive information

        Args:
            message: Original log message

        Returns:
            Sanitized log message
        """
        message = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b', '[email]', message)
        message = re.sub(r'\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b', '[ip]', message)
        # Long opaque strings (QR payloads, access keys)
        message = re.sub(r'[A-Za-z0-9_\-+/=]{24,}', '[token]', message)

        if '\n' in message:
            message = message.split('\n')[0] + ' [stack trace truncated]'

        return message

    @staticmethod
    def should_sanitize(message: str) -> bool:
        """Check if message contains sensitive patterns"""
        message_lower = message.lower()
        for pattern in SecureLogger.SENSITIVE_PATTERNS:
            if re.search(pattern, message_lower):
                return True
        return False

    @classmethod
    def log(cls, logger: logging.Logger, level: int, message: str, *args, **kwargs):
        if cls.should_sanitize(message):
            message = cls.sanitize_message(message)
            logger.log(level, f"[SANITIZED] {message}", *args, **kwargs)
        else:
            logger.log(level, message, *args, **kwargs)


def log_error(message: str, logger_name: Optional[str] = None, exc_info: bool = False, **kwargs):
    """Log error message securely"""
    logger = get_logger(logger_name or __name__)
    if exc_info:
        kwargs['exc_info'] = True
    SecureLogger.log(logger, logging.ERROR, message, **kwargs)


def log_audit(event_type: str, user_id: Optional[str], details: Dict[str, Any]):
    """
    Log audit event with structured data

    Args:
        event_type: Type of audit event
        user_id: User ID (if applicable)
        details: Additional event details (already redacted)
    """
    logger = get_logger("audit")
    audit_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "user_id": user_id,
        "details": details
    }
    logger.info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
