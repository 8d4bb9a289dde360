# /covima/services/security_service.py

import hmac
import hashlib
import re

# Webhook signature verification and input sanitization for inbound messages.

MAX_MESSAGE_LENGTH = 4096


class SecurityService:
    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
        if not signature or not signature.startswith('sha256='):
            return False
        expected_signature = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_signature, signature[7:])

    @staticmethod
    def sanitize_phone_number(phone: str) -> str:
        """
        Digits-only phone, the key conversations are stored under.
        Returns an empty string when fewer than 9 digits remain.
        """
        if not phone or not isinstance(phone, str):
            return ""
        digits = re.sub(r"\D", "", phone)
        if len(digits) < 9 or len(digits) > 15:
            return ""
        return digits

    @staticmethod
    def validate_message_content(message: str) -> str:
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValueError("Message too long")
        return message.strip()
