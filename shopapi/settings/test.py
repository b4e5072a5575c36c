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

STRIPE_SECRET_KEY = 'sk_test_dummy'
STRIPE_PUBLISHABLE_KEY = 'pk_test_dummy'
STRIPE_WEBHOOK_SECRET = 'whsec_test'

PAYPAL_CLIENT_ID = 'paypal-client'
PAYPAL_CLIENT_SECRET = 'paypal-secret'
PAYPAL_WEBHOOK_ID = 'WH-TEST'

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
