import os

from dotenv import load_dotenv

from accounts import get_user_by_email, reset_password


def main():
    load_dotenv()
    if not (os.getenv("DATABASE_URL") or "").strip():
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    email = (os.getenv("RESET_EMAIL") or "").strip().lower()
    raw_password = os.getenv("RESET_PASSWORD") or ""

    if not email:
        raise RuntimeError("RESET_EMAIL is required.")
    if not raw_password:
        raise RuntimeError("RESET_PASSWORD is required.")

    user = get_user_by_email(email)
    if not user:
        print(f"No user found for {email}.")
        return
    reset_password(user['id'], raw_password)
    print(f"Password reset successfully for {email}.")


if __name__ == "__main__":
    main()
