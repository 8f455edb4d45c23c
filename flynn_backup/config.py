import os


def _int_env(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """Base configuration"""

    # Controller
    CONTROLLER_URL = os.environ.get('CONTROLLER_URL') or 'http://controller.discoverd'
    CONTROLLER_KEY = os.environ.get('CONTROLLER_KEY', '')
    CONTROLLER_TIMEOUT = _int_env('CONTROLLER_TIMEOUT', 30)

    # Dumps
    JOB_TIMEOUT = _int_env('JOB_TIMEOUT', 0)  # Seconds per dump job, 0 = no limit
    SPILL_THRESHOLD = _int_env('SPILL_THRESHOLD', 64 * 1024 * 1024)

    # HTTP endpoint auth (unset = no auth)
    BACKUP_AUTH_KEY = os.environ.get('BACKUP_AUTH_KEY')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/flynn-backup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Temp/Logs
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "flynn-backup.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class CliConfig(ProductionConfig):
    """Console script configuration, keeps its state under the working directory"""

    DATA_DIR = os.environ.get('FLYNN_BACKUP_DATA_DIR') or os.path.join(os.getcwd(), '.flynn-backup')
    SQLALCHEMY_DATABASE_URI = (
        os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "flynn-backup.db")}'
    )
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'cli': CliConfig,
    'default': ProductionConfig
}
