import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CREDENTIALS_ENC_KEY", "unit-test-credentials-key")
os.environ.setdefault("API_PUBLIC_BASE_URL", "https://api.horizon.test")
os.environ.setdefault("TWILIO_VALIDATE_SIGNATURE", "false")
os.environ.pop("AZURE_STORAGE_CONNECTION_STRING", None)
