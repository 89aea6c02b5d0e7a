import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Rounds core configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///rounds.db')
    TRANSACTION_MAX_RETRIES = int(os.getenv('TRANSACTION_MAX_RETRIES', 3))
    
    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    
    # Player settings
    STARTING_RATING = int(os.getenv('STARTING_RATING', 1500))
    
    # Elo calculation settings
    ELO_BASE_K_FACTOR = float(os.getenv('ELO_BASE_K_FACTOR', 32))
    ELO_MAX_DIFFERENTIAL_BONUS = float(os.getenv('ELO_MAX_DIFFERENTIAL_BONUS', 0.25))
    ELO_RATING_FLOOR = int(os.getenv('ELO_RATING_FLOOR', 100))
    ELO_EXPERIENCE_K_FACTOR = os.getenv('ELO_EXPERIENCE_K_FACTOR', 'False').lower() == 'true'
    
    # Matchmaking settings
    MATCHMAKING_MAX_RATING_DIFFERENCE = float(os.getenv('MATCHMAKING_MAX_RATING_DIFFERENCE', 400))
    MATCHMAKING_EXPANSION_RATE = float(os.getenv('MATCHMAKING_EXPANSION_RATE', 50))
    MATCHMAKING_EXPANSION_INTERVAL_SECONDS = float(os.getenv('MATCHMAKING_EXPANSION_INTERVAL_SECONDS', 30))
    MATCHMAKING_MAX_QUEUE_SECONDS = float(os.getenv('MATCHMAKING_MAX_QUEUE_SECONDS', 300))
    MATCHMAKING_ACCEPT_TIMEOUT_SECONDS = float(os.getenv('MATCHMAKING_ACCEPT_TIMEOUT_SECONDS', 60))
    SWEEP_INTERVAL_SECONDS = float(os.getenv('SWEEP_INTERVAL_SECONDS', 15))
    
    @classmethod
    def get_async_database_url(cls) -> str:
        """Get the database URL with an async driver for sqlite"""
        database_url = cls.DATABASE_URL
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return database_url
    
    @classmethod
    def validate(cls):
        """Validate that configuration values are consistent"""
        if cls.ELO_BASE_K_FACTOR <= 0:
            raise ValueError("ELO_BASE_K_FACTOR must be positive")
        if cls.ELO_MAX_DIFFERENTIAL_BONUS < 0:
            raise ValueError("ELO_MAX_DIFFERENTIAL_BONUS cannot be negative")
        if cls.ELO_RATING_FLOOR < 0:
            raise ValueError("ELO_RATING_FLOOR cannot be negative")
        if cls.STARTING_RATING < cls.ELO_RATING_FLOOR:
            raise ValueError("STARTING_RATING must not be below ELO_RATING_FLOOR")
        if cls.MATCHMAKING_EXPANSION_INTERVAL_SECONDS <= 0:
            raise ValueError("MATCHMAKING_EXPANSION_INTERVAL_SECONDS must be positive")
        if cls.TRANSACTION_MAX_RETRIES < 1:
            raise ValueError("TRANSACTION_MAX_RETRIES must be at least 1")
