"""Local development entry point.

Usage:
    python run.py

Reads .env first, so DATABASE_URL and the Stripe keys can live there.
Operator commands run through the Flask CLI instead:

    FLASK_APP=run.py flask retry-webhooks
    FLASK_APP=run.py flask db upgrade
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from creditledger import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("PORT", 5002)))
