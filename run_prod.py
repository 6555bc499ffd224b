#!/usr/bin/env python3
"""
Production runner for the fair meeting point API
- Serves the Flask API (meetpoint.app); routes live under "/api"
- Loads .env for GOOGLE_MAPS_API_KEY and other settings

Usage:
  python3 run_prod.py

Environment:
  PORT=8000 (default)        # Port to bind
  HOST=0.0.0.0 (default)     # Host interface
  GOOGLE_MAPS_API_KEY=...    # Required for /api/optimize and /api/reachability
  TRUST_PROXY_HEADERS=1      # Honor X-Forwarded-* from one proxy hop
  WSGI_THREADS=8             # waitress worker threads
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.serving import run_simple

PROJECT_ROOT = Path(__file__).resolve().parent

# Load env from .env if present
load_dotenv(dotenv_path=PROJECT_ROOT / '.env')

from meetpoint.app import app as api_app, maps_service  # noqa: E402


application = api_app

# Respect reverse proxy headers (X-Forwarded-*) when behind a proxy/HTTPS terminator
if os.getenv('TRUST_PROXY_HEADERS', '1') not in ('0', 'false', 'False', 'no', 'off'):
    x_for = int(os.getenv('PROXY_FIX_X_FOR', '1'))
    x_proto = int(os.getenv('PROXY_FIX_X_PROTO', '1'))
    x_host = int(os.getenv('PROXY_FIX_X_HOST', '1'))
    x_prefix = int(os.getenv('PROXY_FIX_X_PREFIX', '1'))
    application = ProxyFix(application, x_for=x_for, x_proto=x_proto, x_host=x_host, x_prefix=x_prefix)


def main():
    host = os.getenv('HOST', '0.0.0.0')
    try:
        port = int(os.getenv('PORT', '8000'))
    except ValueError:
        port = 8000

    if maps_service is None:
        print("\n" + "="*60)
        print("Warning: GOOGLE_MAPS_API_KEY is not configured.")
        print("Hypothesis points and rescoring work; optimization is disabled.")
        print("Set it in your environment or .env file.")
        print("="*60 + "\n")

    print(f"\n🚀 Starting fair meeting point API (prod) on http://{host}:{port}")
    print(" - API: /api/*")

    # Prefer waitress if installed; otherwise use Werkzeug's run_simple
    try:
        from waitress import serve
    except ImportError:
        print("[warn] waitress not installed; using Werkzeug server")
        run_simple(hostname=host, port=port, application=application, threaded=True)
        return
    print("Using waitress WSGI server")
    serve(application, host=host, port=port, threads=int(os.getenv('WSGI_THREADS', '8')))


if __name__ == '__main__':
    main()
