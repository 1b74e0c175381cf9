import os

# --- AWS Configuration ---
REGION = os.environ.get('AWS_REGION', 'us-east-1')

# Table names used by this app (prefix lets several stages share an account)
TABLE_NAMES = {
    'users': 'Users',
    'donations': 'Donations',
    'hospitals': 'Hospitals',
    'appointments': 'Appointments',
}


def _flag(value):
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config(overrides=None):
    """Build the settings mapping from the environment, then apply overrides."""
    config = {
        'AWS_REGION': REGION,
        'TABLE_PREFIX': os.environ.get('DONORSTREAK_TABLE_PREFIX', ''),
        'SNS_TOPIC_ARN': os.environ.get('DONORSTREAK_SNS_TOPIC_ARN', ''),
        'SECRET_KEY': os.environ.get('DONORSTREAK_SECRET_KEY', 'donorstreak_dev_key'),
        'ANNUAL_LIMIT': int(os.environ.get('DONORSTREAK_ANNUAL_LIMIT', 4)),
        'BOOKING_TRANSACTIONS': _flag(os.environ.get('DONORSTREAK_BOOKING_TRANSACTIONS', 'true')),
        'LOG_LEVEL': os.environ.get('DONORSTREAK_LOG_LEVEL', 'INFO'),
    }
    if overrides:
        config.update(overrides)
    return config


def table_names(prefix=''):
    return {key: f"{prefix}{name}" for key, name in TABLE_NAMES.items()}
