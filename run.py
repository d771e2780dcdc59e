"""Local development entry point.

Usage:
    python run.py

Loads .env, then serves the API on port 4242 (the storefront's default
API_URL).
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from korelia import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("PORT", 4242)))
