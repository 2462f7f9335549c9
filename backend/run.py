from __future__ import annotations

import uvicorn

from fourbyte.config import settings


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        reload_dirs=["backend"],
    )
