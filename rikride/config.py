"""
Application Configuration
Fixed constants for pooling, fares and infrastructure, loaded from the environment
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/rikride")

# JWT Configuration
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", str(24 * 7)))

# Pool rides
POOL_MAX_SEATS = int(os.getenv("POOL_MAX_SEATS", "3"))  # Auto rickshaw capacity
POOL_MIN_PARTICIPANTS = int(os.getenv("POOL_MIN_PARTICIPANTS", "2"))
POOL_DISCOUNT = float(os.getenv("POOL_DISCOUNT", "0.35"))
DRIVER_POOL_BONUS = float(os.getenv("DRIVER_POOL_BONUS", "0.1"))
POOL_MATCH_RADIUS_KM = float(os.getenv("POOL_MATCH_RADIUS_KM", "1.0"))
POOL_MAX_MATCH_RADIUS_KM = float(os.getenv("POOL_MAX_MATCH_RADIUS_KM", "2.0"))
POOL_EXPIRY_MINUTES = int(os.getenv("POOL_EXPIRY_MINUTES", "15"))

# Fares (INR)
FARE_BASE = float(os.getenv("FARE_BASE", "20"))
FARE_PER_KM = float(os.getenv("FARE_PER_KM", "10"))
FARE_MINIMUM = float(os.getenv("FARE_MINIMUM", "30"))
FARE_PEAK_MULTIPLIER = float(os.getenv("FARE_PEAK_MULTIPLIER", "1.5"))
PEAK_HOUR_WINDOWS = ((7, 10), (17, 20))  # Inclusive local hours

# Optimistic concurrency
CAS_MAX_RETRIES = int(os.getenv("CAS_MAX_RETRIES", "5"))

# Google Maps
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")
MAPS_MAX_REQUESTS = int(os.getenv("MAPS_MAX_REQUESTS", "50"))
MAPS_WINDOW_SECONDS = float(os.getenv("MAPS_WINDOW_SECONDS", "60"))
MAPS_MIN_INTERVAL_SECONDS = float(os.getenv("MAPS_MIN_INTERVAL_SECONDS", "0.5"))
MAPS_CACHE_TTL_SECONDS = float(os.getenv("MAPS_CACHE_TTL_SECONDS", "300"))
MAPS_CACHE_MAX_ENTRIES = int(os.getenv("MAPS_CACHE_MAX_ENTRIES", "500"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
