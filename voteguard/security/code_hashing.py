# voteguard/security/code_hashing.py

import re
import secrets
import string
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHashError, HashingError

from voteguard.errors import InternalError

# Secret code generation and salted hashing using Argon2id.
# Codes are 2 uppercase letters followed by 4 digits.

CODE_PATTERN = re.compile(r'^[A-Z]{2}[0-9]{4}$')


class CodeHasher:
    def __init__(self, time_cost=3, memory_cost=65536, parallelism=4):
        self.ph = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=16,
        )

    def generate_code(self) -> str:
        letters = ''.join(secrets.choice(string.ascii_uppercase) for _ in range(2))
        digits = ''.join(secrets.choice(string.digits) for _ in range(4))
        return letters + digits

    def generate_salt(self) -> str:
        return secrets.token_hex(16)

    def hash_code(self, code: str, salt: str) -> str:
        try:
            return self.ph.hash(code + salt)
        except HashingError as e:
            raise InternalError(f"Secret code hashing failed: {e}")

    def verify_code(self, code: str, salt: str, code_hash: str) -> bool:
        if not isinstance(code, str):
            return False
        try:
            self.ph.verify(code_hash, code.strip().upper() + salt)
            return True
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, code_hash: str) -> bool:
        return self.ph.check_needs_rehash(code_hash)

    @staticmethod
    def is_valid_format(code) -> bool:
        return isinstance(code, str) and bool(CODE_PATTERN.match(code.strip().upper()))
