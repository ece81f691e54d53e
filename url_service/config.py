import os
from dotenv import load_dotenv

load_dotenv()

SERVICE_NAME = "url_service"
PORT = int(os.getenv("URL_SERVICE_PORT", "5002"))
