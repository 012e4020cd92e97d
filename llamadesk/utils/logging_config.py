import logging
import sys
import os

def setup_logging(name: str = "llamadesk", log_level: str = None) -> logging.Logger:
    """
    Sets up the application-wide logging configuration.
    
    Args:
        name (str): The name of the logger.
        log_level (str): Logging level (DEBUG, INFO, WARNING, ERROR).
            Defaults to the LOG_LEVEL environment variable or INFO.
        
    Returns:
        logging.Logger: Configured logger instance.
    """
    log_dir = os.getenv("LLAMADESK_LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(level)
    
    if not logger.handlers:
        # Console Handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)
        
        # File Handler
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"{name}.log"), encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)
        
    return logger
