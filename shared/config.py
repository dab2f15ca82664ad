"""
Конфигурация приложения
"""
import json
import os
from decimal import Decimal
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Базовые пути
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

# Telegram (только для уведомлений админам)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")

# PostgreSQL
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost/unifarm")
DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "20"))
DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "40"))

# Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Время
SECONDS_IN_DAY = 86400

# Фарминг
FARMING_DAILY_RATE = Decimal(os.getenv("FARMING_DAILY_RATE", "0.005"))  # 0.5% в день
FARMING_MIN_DEPOSIT = Decimal(os.getenv("FARMING_MIN_DEPOSIT", "0.001"))

# Буст-пакеты: единственный источник ставок (rate_ton в % в день)
BOOST_PACKAGES_JSON = os.getenv(
    "BOOST_PACKAGES",
    json.dumps([
        {"id": 1, "name": "Starter Boost", "price_ton": "1.0", "bonus_uni": "10000.0", "rate_ton": "0.5"},
        {"id": 2, "name": "Standard Boost", "price_ton": "5.0", "bonus_uni": "75000.0", "rate_ton": "1.0"},
        {"id": 3, "name": "Advanced Boost", "price_ton": "15.0", "bonus_uni": "250000.0", "rate_ton": "2.0"},
        {"id": 4, "name": "Premium Boost", "price_ton": "25.0", "bonus_uni": "500000.0", "rate_ton": "2.5"},
    ])
)
BOOST_PACKAGES: List[dict] = json.loads(BOOST_PACKAGES_JSON)
BOOST_DURATION_DAYS = int(os.getenv("BOOST_DURATION_DAYS", "365"))

# Ежедневный бонус
DAILY_BONUS_AMOUNT = Decimal(os.getenv("DAILY_BONUS_AMOUNT", "500"))

# Реферальная программа: доли по уровням (уровень 1 = прямой пригласитель)
REFERRAL_MAX_DEPTH = int(os.getenv("REFERRAL_MAX_DEPTH", "20"))
REFERRAL_LEVEL_RATES: List[Decimal] = [
    Decimal(str(rate))
    for rate in json.loads(os.getenv("REFERRAL_LEVEL_RATES", '["0.10", "0.05", "0.02"]'))
]
REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_ALPHABET = "abcdefghjkmnpqrstuvwxyz23456789"

# Цикл начислений
ACCRUAL_INTERVAL = int(os.getenv("ACCRUAL_INTERVAL", "60"))  # секунды между циклами
CYCLE_TIME_BUDGET = int(os.getenv("CYCLE_TIME_BUDGET", "50"))  # секунды на один цикл
CYCLE_LOCK_TTL = int(os.getenv("CYCLE_LOCK_TTL", "300"))
CYCLE_LOCK_ENABLED = os.getenv("CYCLE_LOCK_ENABLED", "true").lower() == "true"

# Повторное распределение реферальных долей
DISTRIBUTION_RECOVERY_BATCH = int(os.getenv("DISTRIBUTION_RECOVERY_BATCH", "100"))
DISTRIBUTION_MAX_ATTEMPTS = int(os.getenv("DISTRIBUTION_MAX_ATTEMPTS", "10"))

# Повторы при сбоях хранилища
STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
STORE_RETRY_DELAY = float(os.getenv("STORE_RETRY_DELAY", "0.5"))

# Партиционирование транзакций
TRANSACTIONS_TABLE = "transactions"
PARTITION_GRANULARITY = os.getenv("PARTITION_GRANULARITY", "day")  # day | month
PARTITION_FORWARD_HORIZON_DAYS = int(os.getenv("PARTITION_FORWARD_HORIZON_DAYS", "7"))
PARTITION_CATCH_ALL_ENABLED = os.getenv("PARTITION_CATCH_ALL_ENABLED", "true").lower() == "true"
PARTITION_MAINTENANCE_INTERVAL = int(os.getenv("PARTITION_MAINTENANCE_INTERVAL", "86400"))

# Администраторы (список Telegram ID)
ADMIN_IDS_STR = os.getenv("ADMIN_IDS", "")  # Через запятую: "123456789,987654321"
ADMIN_IDS: List[int] = [int(id.strip()) for id in ADMIN_IDS_STR.split(",") if id.strip()]

# API Server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PORT", "8080"))

# Логирование
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def ensure_data_dirs():
    """Создание директорий для логов"""
    DATA_DIR.mkdir(exist_ok=True)
    (DATA_DIR / "logs").mkdir(exist_ok=True)
