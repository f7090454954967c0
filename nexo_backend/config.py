"""Shared environment configuration constants for the Nexo backend."""
import os

# --- API Keys ---
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/nexo")

# --- Auth (tokens issued by the hosted auth provider) ---
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET")
AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE") or None

# --- HTTP ---
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

# --- Messages ---
MAX_MESSAGE_LENGTH = 2000
