"""Business logic for user accounts."""
from typing import Dict, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6


class UserService:
    """Registration, login and password changes on top of the ``database``
    module's user helpers.

    Passwords are stored as werkzeug salted hashes.  Methods that can fail
    for a user-facing reason return ``(success, message)`` tuples.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``get_user_by_username``, ``create_user`` and
                ``update_user_password``).
        """
        self._db = db_module

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def hash_password(password: str) -> str:
        return generate_password_hash(password)

    @staticmethod
    def _check_password(password: str) -> Optional[str]:
        if len(password) < MIN_PASSWORD_LENGTH:
            return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register(self, db, username: str, password: str, email: str = '',
                 display_name: str = '') -> Tuple[bool, str]:
        """Create an account.

        Returns:
            ``(True, message)`` on success, ``(False, reason)`` otherwise.
        """
        if len(username) < MIN_USERNAME_LENGTH:
            return False, f"Username must be at least {MIN_USERNAME_LENGTH} characters"
        error = self._check_password(password)
        if error:
            return False, error
        if self._db.get_user_by_username(db, username):
            return False, "Username already exists"
        user = self._db.create_user(db, username, self.hash_password(password),
                                    email=email, display_name=display_name)
        if user is None:
            return False, "Failed to create user"
        return True, "User registered successfully"

    def login(self, db, username: str, password: str) -> Tuple[bool, str]:
        user = self._db.get_user_by_username(db, username)
        if user is None or not check_password_hash(user.password, password):
            return False, "Invalid username or password"
        return True, "Logged in successfully"

    def change_password(self, db, username: str, current_password: str,
                        new_password: str) -> Tuple[bool, str]:
        ok, _ = self.login(db, username, current_password)
        if not ok:
            return False, "Current password is incorrect"
        error = self._check_password(new_password)
        if error:
            return False, error
        if not self._db.update_user_password(db, username, self.hash_password(new_password)):
            return False, "Failed to update password"
        return True, "Password updated successfully"

    def get_profile(self, db, username: str) -> Optional[Dict]:
        """Return public account details and spin statistics, or ``None``."""
        user = self._db.get_user_by_username(db, username)
        if user is None:
            return None
        return {
            'username': user.username,
            'email': user.email,
            'display_name': user.display_name,
            'created_at': user.created_at.isoformat() if user.created_at else None,
            'stats': user.stats(),
        }
