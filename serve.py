# /// script
# dependencies = ["fastapi==0.115.0", "uvicorn==0.30.6", "httpx==0.27.2", "openai==1.58.1", "pydantic==2.9.2"]
# ///

import os
import uvicorn

from bot_common import set_verbose
from main import app

if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    if os.environ.get("BOT_WORKER_LOG", "1") == "1":
        set_verbose(True)
    uvicorn.run(app, host=host, port=port)
