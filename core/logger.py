import logging
import logging.handlers
import os
import sys

# 日志目录，可由环境变量 LOG_DIR 覆盖
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

# 模型调用相关的第三方库日志过于啰嗦，只保留警告以上
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")


def setup_logging(log_dir: str = None, level: str = None, to_file: bool = True) -> str:
    """
    设置日志：输出到控制台，并（默认）写入按大小轮转的 app.log。

    Args:
        log_dir (str): 日志目录，默认取 LOG_DIR。
        level (str): 日志级别，默认取环境变量 LOG_LEVEL，缺省为 INFO。
        to_file (bool): 是否写入日志文件。

    Returns:
        str: 日志文件路径；to_file 为 False 时返回空字符串。
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    formatter = logging.Formatter(LOG_FORMAT)

    # 移除所有现有的handler，避免重复输出
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    logging.root.setLevel(level)

    log_file = ""
    if to_file:
        log_dir = log_dir or LOG_DIR
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, "app.log")
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024, # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logging.root.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logging.root.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)
    logging.getLogger(__name__).debug(f"日志已初始化 (级别: {level}, 文件: {log_file or '无'})")
    return log_file
