"""TOTP secrets, provisioning and code checks using pyotp."""

import base64
import hmac
import io
import time
from collections.abc import Callable

import pyotp
import qrcode
from cryptography.fernet import Fernet


class TotpManager:
    """Generates, stores and checks authenticator-app secrets."""

    def __init__(self, encryption_key: bytes, issuer: str = "BillFlow", clock: Callable[[], float] = time.time):
        """Initialize with a Fernet key used to encrypt stored secrets."""
        self.fernet = Fernet(encryption_key)
        self.issuer = issuer
        self.clock = clock

    def generate_secret(self) -> str:
        return pyotp.random_base32()

    def encrypt_secret(self, secret: str) -> bytes:
        return self.fernet.encrypt(secret.encode())

    def decrypt_secret(self, encrypted: bytes) -> str:
        return self.fernet.decrypt(encrypted).decode()

    def get_provisioning_uri(self, secret: str, account_name: str) -> str:
        """Get the otpauth:// URI for QR code generation."""
        return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=self.issuer)

    def generate_qr_code_base64(self, provisioning_uri: str) -> str:
        """Render a provisioning URI as a base64-encoded PNG."""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return base64.b64encode(buffer.getvalue()).decode()

    def match_step(self, secret: str, code: str, valid_window: int = 1, for_time: float | None = None) -> int | None:
        """Time step the code belongs to, or None if it matches no step.

        Allows ``valid_window`` steps before and after for clock drift.
        Callers record the step to refuse replays of the same code.
        """
        if not code.isdigit():
            return None
        totp = pyotp.TOTP(secret)
        now = self.clock() if for_time is None else for_time
        step = int(now // totp.interval)
        for offset in range(-valid_window, valid_window + 1):
            if hmac.compare_digest(totp.generate_otp(step + offset), code):
                return step + offset
        return None
