import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./elimufiti.db")

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# ✅ App
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ M-Pesa (Daraja)
MPESA_ENV = os.getenv("MPESA_ENV", "sandbox")
MPESA_BASE_URL = os.getenv(
    "MPESA_BASE_URL",
    "https://api.safaricom.co.ke" if MPESA_ENV == "production" else "https://sandbox.safaricom.co.ke",
)
MPESA_CONSUMER_KEY = os.getenv("MPESA_CONSUMER_KEY")
MPESA_CONSUMER_SECRET = os.getenv("MPESA_CONSUMER_SECRET")
MPESA_SHORTCODE = os.getenv("MPESA_SHORTCODE")
MPESA_PASSKEY = os.getenv("MPESA_PASSKEY")
MPESA_CALLBACK_URL = os.getenv("MPESA_CALLBACK_URL")
MPESA_CALLBACK_TOKEN = os.getenv("MPESA_CALLBACK_TOKEN")
MPESA_TIMEOUT_SECONDS = float(os.getenv("MPESA_TIMEOUT_SECONDS", "30"))
MPESA_TOKEN_EXPIRY_MARGIN_SECONDS = int(os.getenv("MPESA_TOKEN_EXPIRY_MARGIN_SECONDS", "60"))
MPESA_ACCOUNT_PREFIX = os.getenv("MPESA_ACCOUNT_PREFIX", "ELIMUFITI")

# ✅ Payments
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "KSH")
PAYMENT_PENDING_TIMEOUT_SECONDS = int(os.getenv("PAYMENT_PENDING_TIMEOUT_SECONDS", "180"))
INITIATE_RATE_LIMIT = int(os.getenv("INITIATE_RATE_LIMIT", "5"))
INITIATE_RATE_WINDOW_SECONDS = int(os.getenv("INITIATE_RATE_WINDOW_SECONDS", "60"))
