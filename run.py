#!/usr/bin/env python3
"""
Run script for the IAM service.
This script loads a local .env file, then launches the FastAPI server with
the auth and admin routers mounted.
"""
import os
import sys
import traceback

import uvicorn
from dotenv import load_dotenv

if __name__ == "__main__":
    try:
        # Settings are read from the environment when the app module is imported
        load_dotenv()
        port = int(os.getenv("PORT", "8000"))

        print("Starting IAM service...")
        print(f"Access the API at http://localhost:{port}")
        print(f"API documentation at http://localhost:{port}/docs")

        uvicorn.run(
            "iam_service.main:app",
            host="0.0.0.0",
            port=port,
            reload=os.getenv("ENVIRONMENT", "development") != "production",
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
        )
    except Exception as e:
        print(f"Error starting server: {e}")
        traceback.print_exc()
        sys.exit(1)
