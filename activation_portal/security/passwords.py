from pwdlib import PasswordHash


password_hash = PasswordHash.recommended()

# verified against when the username is unknown so failed logins cost the same
_DUMMY_HASH = password_hash.hash('activation-portal-dummy-password')


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def verify_password(raw_password: str, hashed_password: str | None) -> bool:
    if not hashed_password:
        password_hash.verify(raw_password, _DUMMY_HASH)
        return False
    return password_hash.verify(raw_password, hashed_password)
