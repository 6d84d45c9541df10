class Settings:
    PROJECT_NAME: str = "examprep"
    DEBUG: bool = False
    LOG_DIR: str = "log"
    LOG_FILE: str = "examprep.log"
    LOG_TO_DB: bool = True
    DB_DIR: str = "db"
    DB_FILE: str = "examprep.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_PREFIX: str = "examprep"
    QUESTIONS_DIR: str = "questions"
    SESSION_COOKIE_NAME: str = "exam_session_id"
    SESSION_TIMEOUT_MINUTES: int = 240

    # Seeded exam-type defaults, in seconds
    DEFAULT_DURATIONS: dict = {"JAMB": 9000, "WAEC": 10800}

    SUBJECT_QUESTION_LIMIT: int = 60
    YEAR_QUESTIONS_PER_SUBJECT: int = 10
    MIN_EXAM_YEAR: int = 2000

    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0


settings = Settings()
