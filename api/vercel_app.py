"""
Vercel-specific Flask application entry point.
"""

import os
from app import create_app

# Serverless functions are short-lived; Redis TTLs handle session expiry there
app = create_app({'OTP_SWEEPER_ENABLED': os.getenv('OTP_SWEEPER_ENABLED', 'false').lower() == 'true'})

# Vercel expects the WSGI application to be named 'app'
if __name__ == "__main__":
    app.run(debug=False, host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
