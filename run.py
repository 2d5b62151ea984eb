#!/usr/bin/env python3
"""
ServoLeY Marketplace API
Entry point for the Flask application.
"""

import os

from dotenv import load_dotenv

load_dotenv()

from servoley import create_app  # noqa: E402  (settings are read at import time)

app = create_app()

if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1',
            host=os.environ.get('HOST', '127.0.0.1'),
            port=int(os.environ.get('PORT', 5000)))
