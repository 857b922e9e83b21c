from __future__ import annotations

import asyncio
import hashlib
import hmac
import math
import re
import secrets
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from sessionguard.config import HashScheme, PasswordPolicy, Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import HashingError
from sessionguard.service.results import PasswordStrengthResult, ReuseCheckResult
from sessionguard.storage.models import as_utc, clamp_score, utc_now

logger = get_logger(__name__)

COMMON_WEAK_PASSWORDS = frozenset({
    "password",
    "password123",
    "123456",
    "123456789",
    "qwerty",
    "abc123",
    "password1",
    "admin",
    "letmein",
    "welcome",
    "monkey",
    "dragon",
    "master",
    "hello",
    "freedom",
    "whatever",
    "qazwsx",
    "trustno1",
})

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_REPEAT_RE = re.compile(r"(.)\1{2,}")
_SEQUENCE_RE = re.compile(
    r"abc|bcd|cde|def|efg|fgh|ghi|hij|ijk|jkl|klm|lmn|mno|nop|opq|pqr|qrs|rst|stu|tuv|uvw|vwx|wxy|xyz"
    r"|123|234|345|456|567|678|789",
    re.IGNORECASE,
)
_KEYBOARD_RE = re.compile(
    r"qwe|wer|ert|rty|tyu|yui|uio|iop|asd|sdf|dfg|fgh|ghj|hjk|jkl|zxc|xcv|cvb|vbn|bnm",
    re.IGNORECASE,
)

# Offline GPU attack rate used for the crack-time estimate
GUESSES_PER_SECOND = 1_000_000_000

_MINUTE = 60
_HOUR = 3600
_DAY = 86400
_YEAR = 31536000

SCRYPT_PREFIX = "scrypt:"
# Matches the parameters legacy hashes were written with
_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_KEYLEN = 64


@dataclass(frozen=True)
class PasswordContext:
    email: Optional[str] = None
    name: Optional[str] = None
    previous_passwords: Sequence[str] = field(default_factory=tuple)


def estimate_crack_time(password: str) -> str:
    """Average-case brute force time for ``password`` as a human string."""

    space = 0
    if _LOWER_RE.search(password):
        space += 26
    if _UPPER_RE.search(password):
        space += 26
    if _DIGIT_RE.search(password):
        space += 10
    if _SPECIAL_RE.search(password):
        space += 32
    if not password or space == 0:
        return "Less than 1 second"

    # log10 keeps long passwords from overflowing a float
    log_seconds = len(password) * math.log10(space) - math.log10(2) - math.log10(GUESSES_PER_SECOND)
    if log_seconds < 0:
        return "Less than 1 second"
    if log_seconds >= math.log10(_YEAR * 1000):
        return "Centuries or more"

    seconds = 10 ** log_seconds
    if seconds < _MINUTE:
        return f"{round(seconds)} seconds"
    if seconds < _HOUR:
        return f"{round(seconds / _MINUTE)} minutes"
    if seconds < _DAY:
        return f"{round(seconds / _HOUR)} hours"
    if seconds < _YEAR:
        return f"{round(seconds / _DAY)} days"
    return f"{round(seconds / _YEAR)} years"


def strength_label(score: int) -> str:
    if score < 20:
        return "very-weak"
    if score < 40:
        return "weak"
    if score < 60:
        return "fair"
    if score < 80:
        return "good"
    if score < 95:
        return "strong"
    return "very-strong"


def generate_secure_password(length: int = 16) -> str:
    """Random password guaranteed to contain every character class."""

    if length < 4:
        raise ValueError("length must be at least 4 to include every character class")
    uppercase = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    lowercase = "abcdefghijklmnopqrstuvwxyz"
    digits = "0123456789"
    specials = "!@#$%^&*()_+-=[]{}|;:,.<>?"
    alphabet = uppercase + lowercase + digits + specials

    chars = [
        secrets.choice(uppercase),
        secrets.choice(lowercase),
        secrets.choice(digits),
        secrets.choice(specials),
    ]
    chars.extend(secrets.choice(alphabet) for _ in range(length - 4))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class PasswordHashing:
    """Adaptive password hashing with argon2id and legacy scrypt support.

    New hashes use the configured scheme. Verification recognises either
    scheme from the stored string and never raises.
    """

    def __init__(
        self,
        *,
        scheme: HashScheme = HashScheme.ARGON2ID,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        workers: int = 4,
    ) -> None:
        self.scheme = scheme
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pwhash")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHashing":
        if settings.test_mode:
            # Cheap parameters so test suites don't spend seconds per hash
            return cls(
                scheme=settings.password_hash_scheme,
                time_cost=1,
                memory_cost=1024,
                parallelism=1,
                workers=settings.hash_workers,
            )
        return cls(
            scheme=settings.password_hash_scheme,
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            workers=settings.hash_workers,
        )

    def hash(self, password: str, scheme: Optional[HashScheme] = None) -> str:
        selected = scheme or self.scheme
        try:
            if selected == HashScheme.SCRYPT:
                salt = secrets.token_hex(32)
                key = hashlib.scrypt(
                    password.encode(),
                    salt=salt.encode(),
                    n=_SCRYPT_N,
                    r=_SCRYPT_R,
                    p=_SCRYPT_P,
                    dklen=_SCRYPT_KEYLEN,
                )
                return f"{SCRYPT_PREFIX}{salt}:{key.hex()}"
            return self._hasher.hash(password)
        except Exception as exc:
            logger.error("password_hash_failed", scheme=selected.value, error_type=type(exc).__name__)
            raise HashingError("failed to hash password", detail={"scheme": selected.value}) from exc

    def verify(self, password: str, stored: str) -> bool:
        if not stored or not isinstance(stored, str):
            return False
        try:
            if stored.startswith(SCRYPT_PREFIX):
                return self._verify_scrypt(password, stored)
            if stored.startswith("$argon2"):
                return self._hasher.verify(stored, password)
            logger.warning("password_hash_scheme_unsupported", prefix=stored[:4])
            return False
        except (VerificationError, InvalidHashError):
            return False
        except Exception as exc:
            # Errors must look exactly like a mismatch to the caller
            logger.warning("password_verification_error", error_type=type(exc).__name__)
            return False

    def _verify_scrypt(self, password: str, stored: str) -> bool:
        parts = stored.split(":")
        if len(parts) != 3:
            return False
        _, salt, expected_hex = parts
        expected = bytes.fromhex(expected_hex)
        derived = hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=_SCRYPT_N,
            r=_SCRYPT_R,
            p=_SCRYPT_P,
            dklen=len(expected) or _SCRYPT_KEYLEN,
        )
        return hmac.compare_digest(derived, expected)

    def needs_rehash(self, stored: str) -> bool:
        """True when ``stored`` should be replaced by a fresh primary-scheme hash."""

        if stored.startswith(SCRYPT_PREFIX):
            return self.scheme != HashScheme.SCRYPT
        try:
            return self._hasher.check_needs_rehash(stored)
        except (InvalidHashError, ValueError):
            return True

    async def hash_async(self, password: str, scheme: Optional[HashScheme] = None) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.hash, password, scheme)

    async def verify_async(self, password: str, stored: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.verify, password, stored)

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class PasswordPolicyEngine:
    """Scores password strength and enforces reuse and expiry rules."""

    def __init__(
        self,
        policy: PasswordPolicy,
        hashing: PasswordHashing,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.policy = policy
        self.hashing = hashing
        self._clock = clock

    def evaluate_strength(
        self, password: str, context: Optional[PasswordContext] = None
    ) -> PasswordStrengthResult:
        policy = self.policy
        context = context or PasswordContext()
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []
        score = 0

        if len(password) < policy.min_length:
            errors.append(f"Password must be at least {policy.min_length} characters long")
        else:
            score += 10
        if len(password) > policy.max_length:
            errors.append(f"Password must not exceed {policy.max_length} characters")

        has_upper = bool(_UPPER_RE.search(password))
        has_lower = bool(_LOWER_RE.search(password))
        has_digit = bool(_DIGIT_RE.search(password))
        special_count = len(_SPECIAL_RE.findall(password))
        has_special = special_count > 0

        for present, required, message in (
            (has_upper, policy.require_uppercase, "Password must contain at least one uppercase letter"),
            (has_lower, policy.require_lowercase, "Password must contain at least one lowercase letter"),
            (has_digit, policy.require_numbers, "Password must contain at least one number"),
            (
                has_special,
                policy.require_special_chars,
                f"Password must contain at least one special character ({SPECIAL_CHARACTERS})",
            ),
        ):
            if present:
                score += 15
            elif required:
                errors.append(message)

        if special_count >= policy.min_special_chars:
            score += 10

        lowered = password.lower()

        if policy.prevent_common_passwords and lowered in COMMON_WEAK_PASSWORDS:
            errors.append("Password is too common and easily guessable")
            score = max(0, score - 30)

        if _REPEAT_RE.search(password):
            warnings.append("Avoid repeating the same character multiple times")
            score = max(0, score - 10)

        if _SEQUENCE_RE.search(password):
            warnings.append("Avoid sequential characters (abc, 123)")
            score = max(0, score - 10)

        if _KEYBOARD_RE.search(password):
            warnings.append("Avoid keyboard patterns (qwerty)")
            score = max(0, score - 10)

        if policy.prevent_user_info and lowered:
            if context.email:
                local_part = context.email.lower().split("@")[0]
                if len(local_part) > 2 and (local_part in lowered or lowered in local_part):
                    errors.append("Password should not contain parts of your email address")
                    score = max(0, score - 20)
            if context.name:
                for part in context.name.lower().split():
                    if len(part) > 2 and (part in lowered or lowered in part):
                        errors.append("Password should not contain parts of your name")
                        score = max(0, score - 20)
                        break

        for threshold in (12, 16, 20):
            if len(password) >= threshold:
                score += 10

        if password and len(set(password)) / len(password) > 0.7:
            score += 10

        if has_upper and has_lower and has_digit and has_special:
            score += 10

        if score < 40:
            suggestions.append("Consider using a longer password with mixed characters")
            suggestions.append("Include uppercase, lowercase, numbers, and special characters")
            suggestions.append("Avoid common words, personal information, and patterns")
        elif score < 70:
            suggestions.append("Consider adding more special characters or increasing length")
            suggestions.append("Ensure password is unique and not based on personal information")
        elif score < 90:
            suggestions.append("Great password! Consider making it even longer for maximum security")

        return PasswordStrengthResult(
            is_valid=not errors,
            score=clamp_score(score),
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            estimated_crack_time=estimate_crack_time(password),
        )

    async def verify_reuse(
        self, new_password: str, prior_hashes: Sequence[str]
    ) -> ReuseCheckResult:
        """Reject ``new_password`` if it matches one of the most recent hashes.

        ``prior_hashes`` is ordered most recent first. Any internal failure
        allows the change.
        """
        if not prior_hashes:
            return ReuseCheckResult(is_valid=True)
        try:
            window = list(prior_hashes)[: self.policy.reuse_window]
            for stored in window:
                if await self.hashing.verify_async(new_password, stored):
                    return ReuseCheckResult(
                        is_valid=False,
                        error=(
                            "Password cannot be the same as your last "
                            f"{self.policy.reuse_window} passwords"
                        ),
                    )
            return ReuseCheckResult(is_valid=True)
        except Exception as exc:
            logger.warning("password_reuse_check_failed", error_type=type(exc).__name__, error=str(exc))
            return ReuseCheckResult.fail_open()

    def is_expired(self, password_changed_at: datetime) -> bool:
        return self._clock() - as_utc(password_changed_at) > self.policy.max_age
