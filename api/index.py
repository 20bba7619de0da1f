"""Serverless entry point for the CropDoc ASGI app."""
import json
import logging

logger = logging.getLogger(__name__)


def failed_startup_app(exc: Exception):
    """ASGI app answering 503 with the import error; the traceback only goes to the log"""
    body = json.dumps({
        "status": "error",
        "message": "CropDoc failed to start",
        "error": f"{type(exc).__name__}: {exc}",
    }).encode("utf-8")

    async def app(scope, receive, send):
        if scope["type"] != "http":
            return
        await send({
            "type": "http.response.start",
            "status": 503,
            "headers": [[b"content-type", b"application/json"]],
        })
        await send({"type": "http.response.body", "body": body})

    return app


try:
    from cropdoc.main import app
except Exception as e:
    logger.exception("CropDoc import failed")
    app = failed_startup_app(e)
