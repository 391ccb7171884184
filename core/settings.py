import json

from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(str(BASE_DIR / '.env'), recurse=False)

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'x402gate',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'x402gate.middleware.PaymentGatewayMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


DATABASE_ENGINE = env.str('DATABASE_ENGINE', 'django.db.backends.sqlite3')

if DATABASE_ENGINE == 'django.db.backends.sqlite3':
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('PGSQL_DATABASE_GATEWAY', env.str('PGSQL_DATABASE', 'x402gate')),
            'USER': env.str('PGSQL_USER', 'postgres'),
            'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
            'HOST': env.str('PGSQL_HOST', 'localhost'),
            'PORT': env.int('PGSQL_PORT', 5432),
        }
    }


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}

X402_NETWORK = env.str('X402_NETWORK', 'avalanche-fuji')
X402_CHAIN_ID = env.int('X402_CHAIN_ID', 43113)
X402_RPC_URL = env.str('X402_RPC_URL', 'https://api.avax-test.network/ext/bc/C/rpc')
X402_EXPLORER_URL = env.str('X402_EXPLORER_URL', 'https://testnet.snowtrace.io')

# Network id -> {chain_id, rpc_url, explorer_url, ...}; entries may override
# any of the signer and gas settings below.
X402_NETWORKS = env.json('X402_NETWORKS', json.dumps({
    X402_NETWORK: {
        'chain_id': X402_CHAIN_ID,
        'rpc_url': X402_RPC_URL,
        'explorer_url': X402_EXPLORER_URL,
    },
}))

X402_SIGNER_PRIVATE_KEY = env.str('X402_SIGNER_PRIVATE_KEY', '')
X402_SIGNER_ADDRESS = env.str('X402_SIGNER_ADDRESS', '')
X402_GAS_LIMIT = env.int('X402_GAS_LIMIT', 250000)
X402_TX_TIMEOUT_SECONDS = env.int('X402_TX_TIMEOUT_SECONDS', 30)
X402_RPC_TIMEOUT_SECONDS = env.int('X402_RPC_TIMEOUT_SECONDS', 10)
X402_MAX_FEE_PER_GAS_WEI = env.int('X402_MAX_FEE_PER_GAS_WEI', 0)
X402_MAX_PRIORITY_FEE_PER_GAS_WEI = env.int(
    'X402_MAX_PRIORITY_FEE_PER_GAS_WEI', 0)
X402_SETTLEMENT_LOOKBACK_BLOCKS = env.int('X402_SETTLEMENT_LOOKBACK_BLOCKS', 5000)
X402_SETTLEMENT_CACHE_SIZE = env.int('X402_SETTLEMENT_CACHE_SIZE', 1024)

X402_PAY_TO_ADDRESS = env.str('X402_PAY_TO_ADDRESS', '')

# Request path -> price. Routes not listed here are not gated.
X402_ROUTES = env.json('X402_ROUTES', json.dumps({
    '/agent/premium-data': {
        'price': env.str('X402_PREMIUM_PRICE', '50000'),
        'network': X402_NETWORK,
        'asset': env.str('X402_ASSET_ADDRESS', '0x5425890298aed601595a70ab815c96711a31bc65'),
        'asset_name': env.str('X402_ASSET_NAME', 'USD Coin'),
        'asset_version': env.str('X402_ASSET_VERSION', '2'),
        'pay_to': X402_PAY_TO_ADDRESS,
        'description': 'Premium market data',
    },
} if X402_PAY_TO_ADDRESS else {}))

X402_NONCE_LEDGER = env.str('X402_NONCE_LEDGER', 'x402gate.ledger.DatabaseNonceLedger')
