"""Application entry point."""
# Load environment variables from .env file
from dotenv import load_dotenv
import os

load_dotenv()

import uvicorn
from api.app import create_app
from checkout_handler.utils.logging import configure_logging

# Get environment configuration
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DATABASE_URL = os.getenv("DATABASE_URL", "NOT_SET")

configure_logging()

# Create the application
app = create_app()

if __name__ == "__main__":
    # Only print banner when running as main script
    print("\n" + "=" * 60)
    print("Checkout Lock API Starting")
    print("=" * 60)
    print(f"Environment:     {ENVIRONMENT}")
    print(f"Database:        {DATABASE_URL[:50]}..." if len(DATABASE_URL) > 50 else f"Database:        {DATABASE_URL}")
    print(f"Lease minutes:   {os.getenv('CHECKOUT_LEASE_MINUTES', '15')}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=ENVIRONMENT == "development",
        log_level="info"
    )
