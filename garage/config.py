import os
from dotenv import load_dotenv

# Carrega variáveis de ambiente do arquivo .env
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///garage.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Jornada nominal de um mecânico (horas -> dias de ocupação)
WORKDAY_HOURS = float(os.getenv("WORKDAY_HOURS", "8"))

# Faturamento
DEFAULT_TAX_RATE = float(os.getenv("DEFAULT_TAX_RATE", "20"))
PAYMENT_TERMS_DAYS = int(os.getenv("PAYMENT_TERMS_DAYS", "30"))
INVOICE_PREFIX = os.getenv("INVOICE_PREFIX", "FACT")
PAYMENT_TOLERANCE = float(os.getenv("PAYMENT_TOLERANCE", "0.01"))

# Relatórios com IA (Gemini)
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-flash-latest")
