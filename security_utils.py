import bcrypt


def hash_code(code: str) -> str:
    """
    Turns "AB12CD" into a secure hash like "$2b$12$..."
    Codes are upper-cased first so matching stays case-insensitive.
    """
    code_bytes = code.strip().upper().encode("utf-8")
    hashed = bcrypt.hashpw(code_bytes, bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_code(plain_code: str, hashed_code: str) -> bool:
    """
    Checks if "ab12cd" matches the stored hash.
    """
    if not hashed_code or not plain_code:
        return False

    code_bytes = plain_code.strip().upper().encode("utf-8")
    return bcrypt.checkpw(code_bytes, hashed_code.encode("utf-8"))
