# run_server.py
import uvicorn

from quote_api.core.config import settings
from quote_api.main import app

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level="info",
    )
