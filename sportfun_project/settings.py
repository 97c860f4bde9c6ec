"""
Django settings for sportfun_project project.

Everything environment-specific is read from environment variables.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-only-insecure-key')
DEBUG = os.environ.get('DJANGO_DEBUG', '1') == '1'
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'portfolio_scan.apps.PortfolioScanConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'sportfun_project.urls'

# The scanner keeps no database state; jobs live in memory, payloads in the cache.
DATABASES = {}

CACHE_DIR = os.environ.get('PORTFOLIO_SCAN_CACHE_DIR')

if CACHE_DIR:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.filebased.FileBasedCache',
            'LOCATION': CACHE_DIR,
            'TIMEOUT': 3600,
            'OPTIONS': {'MAX_ENTRIES': 20000},
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'portfolio-scan',
            'TIMEOUT': 3600,
            'OPTIONS': {'MAX_ENTRIES': 5000},
        }
    }

PORTFOLIO_SCAN_CACHE_ALIAS = 'default'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': ['rest_framework.renderers.JSONRenderer'],
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': ['rest_framework.permissions.AllowAny'],
    'UNAUTHENTICATED_USER': None,
}

# Chain data provider (Base mainnet)
ALCHEMY_API_KEY = os.environ.get('ALCHEMY_API_KEY')
BASE_RPC_URL = os.environ.get('BASE_RPC_URL')

PORTFOLIO_SCAN = {
    'DEFAULT_DEADLINE_SECONDS': float(os.environ.get('PORTFOLIO_SCAN_DEADLINE_SECONDS', '8')),
    'RECEIPT_CONCURRENCY': 4,
    'METADATA_CONCURRENCY': 8,
    'TRANSFER_STREAMS': 4,
    'PRICE_BATCH_SIZE': 100,
    'RETRY_ATTEMPTS': 3,
    'RETRY_BASE_DELAY': 0.25,
    'URI_RETRY_ATTEMPTS': 2,
    'URI_RETRY_BASE_DELAY': 0.2,
    'RESULT_TTL_SECONDS': 3600,
    'RECEIPT_TTL_SECONDS': 7 * 24 * 3600,
    'JOB_TTL_SECONDS': 3600,
    'MISMATCH_SAMPLE_LIMIT': 8,
    'METADATA_TEMPLATE': 'https://api.sport.fun/athletes/{id}',
    'RPC_TIMEOUT_SECONDS': 30,
}

LOG_LEVEL = os.environ.get('PORTFOLIO_SCAN_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'portfolio_scan': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'src': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
    'root': {'handlers': ['console'], 'level': 'WARNING'},
}

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_TZ = True
