"""
Password hashing boundary backed by bcrypt.
"""

import bcrypt


class BcryptHasher:
    """
    Hash and verify passwords with bcrypt.

    Attributes:
        rounds: bcrypt cost factor (4..31)
    """

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        return bcrypt.hashpw(
            password.encode('utf-8'),
            bcrypt.gensalt(rounds=self.rounds)
        ).decode('utf-8')

    def verify(self, password: str, password_hash: str) -> bool:
        """
        Verify password against a stored hash.

        Returns:
            True if password matches, False otherwise (including malformed hashes)
        """
        try:
            return bcrypt.checkpw(
                password.encode('utf-8'),
                password_hash.encode('utf-8')
            )
        except ValueError:
            return False
