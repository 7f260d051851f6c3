"""Local development entry point.

Usage:
    python run.py

Reads .env first so SECRET_KEY, DATABASE_URL and MAIL_* are picked up.
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from pointtracker import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
