import os
from dotenv import load_dotenv

load_dotenv()

SERVICE_NAME = "auth_service"
PORT = int(os.getenv("AUTH_SERVICE_PORT", "5001"))
