"""CORS for the scanner apps and the staff dashboard.

Only reads and POST actions exist, so other methods are not allowed.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from checkpoint.config import Settings
from checkpoint.middleware.rate_limit import LIMIT_HEADER, REMAINING_HEADER
from checkpoint.middleware.request_id import REQUEST_ID_HEADER, SCANNER_ID_HEADER


def setup_cors(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept-Language", REQUEST_ID_HEADER, SCANNER_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER, REMAINING_HEADER, LIMIT_HEADER],
    )
