"""Authentication utilities: password hashing."""

from passlib.context import CryptContext

# Configure bcrypt to avoid compatibility issues with bcrypt 4.0+
PWD_CONTEXT = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b",
    bcrypt__rounds=12,
)


def hash_password(plain_password: str) -> str:
    """Hash a plaintext password for storage."""
    return PWD_CONTEXT.hash(plain_password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify a plaintext password against its hash."""
    return PWD_CONTEXT.verify(plain_password, password_hash)


def dummy_verify() -> None:
    """Spend the same time as a real verification when the user is unknown."""
    PWD_CONTEXT.dummy_verify()
