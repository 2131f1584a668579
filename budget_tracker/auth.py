import logging
from collections import namedtuple
from datetime import datetime

from werkzeug.security import check_password_hash, generate_password_hash

from .db import DATABASE_ERRORS


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

SignUpResult = namedtuple("SignUpResult", ["user", "pending_verification"])


class AuthError(RuntimeError):
    """Raised with a user-facing message when sign-in or sign-up fails."""


def normalize_email(value):
    return (value or "").strip().lower()


class SessionProvider:
    """Sign users in and out against the ``users`` table.

    ``session`` is the mapping that holds the signed-in identity, normally
    ``flask.session``.
    """

    def __init__(self, db, session, auto_sign_in=False):
        self._db = db
        self._session = session
        self._auto_sign_in = auto_sign_in

    def _find_user(self, email):
        return self._db.execute(
            "SELECT id, email, password_hash FROM users WHERE email = ?", (email,)
        ).fetchone()

    def _start_session(self, user):
        self._session.clear()
        self._session["user_id"] = user["id"]

    def sign_in(self, email, password):
        email = normalize_email(email)
        if not email or not password:
            raise AuthError("Email and password are required.")
        try:
            user = self._find_user(email)
        except DATABASE_ERRORS as exc:
            logger.exception("User lookup failed during sign-in")
            raise AuthError("An error occurred during authentication") from exc

        if user is None or not check_password_hash(user["password_hash"], password):
            logger.info("Rejected sign-in for %s", email)
            raise AuthError("Invalid login credentials")

        self._start_session(user)
        return user

    def sign_up(self, email, password):
        email = normalize_email(email)
        if not email or "@" not in email:
            raise AuthError("A valid email address is required.")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters.")

        try:
            if self._find_user(email) is not None:
                raise AuthError("User already registered")
            self._db.execute(
                "INSERT INTO users (email, password_hash, created_at) VALUES (?, ?, ?)",
                (email, generate_password_hash(password), datetime.utcnow().isoformat(timespec="seconds")),
            )
            self._db.commit()
            user = self._find_user(email)
        except DATABASE_ERRORS as exc:
            self._db.rollback()
            logger.exception("Creating user failed")
            raise AuthError("An error occurred during authentication") from exc

        logger.info("Registered user_id=%s", user["id"])
        if self._auto_sign_in:
            self._start_session(user)
            return SignUpResult(user=user, pending_verification=False)
        return SignUpResult(user=user, pending_verification=True)

    def sign_out(self):
        self._session.clear()

    def current_user(self):
        user_id = self._session.get("user_id")
        if user_id is None:
            return None
        return self._db.execute("SELECT id, email FROM users WHERE id = ?", (user_id,)).fetchone()
