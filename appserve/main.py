import logging
import os

from appserve import Server

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)

if __name__ == "__main__":
    server = Server()
    if os.getenv("APP_PAGES"):
        server.pages(os.getenv("APP_PAGES"))
    if os.getenv("APP_VIEWS"):
        server.engine(os.getenv("APP_VIEWS"))
    server.start()
