import uvicorn

from mailhooks.config import settings

if __name__ == "__main__":
    uvicorn.run("mailhooks.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
