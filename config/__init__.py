from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

def load_environment(dotenv_path: str = None):
    """
    从.env文件加载环境变量到环境中（LOG_LEVEL、LOG_DIR、MANUSCRIPT_* 路径以及模型密钥）。
    """
    load_dotenv(dotenv_path)
    logger.debug("环境变量已从 .env 文件加载。")
