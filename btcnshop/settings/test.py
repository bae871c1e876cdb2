from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

SITE_NAME = 'Test Shop'

BTCN_GATEWAY = {
    'ENABLED': True,
    'TITLE': 'BitcoiNote',
    'DESCRIPTION': 'Pay your order with your BTCN coins',
    'INSTRUCTIONS': '',
    'URL': 'http://gateway.test',
    'USERNAME': 'client',
    'PASSWORD': 'secret',
    'IPN_SECRET': 'ipn-secret',
    'TIMEOUT': 5,
}
