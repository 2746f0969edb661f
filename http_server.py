"""
NewsDesk HTTP Server
Read-only JSON endpoint over the headline pipeline.

Usage:
    python http_server.py                    # Run on default port 8000
    python http_server.py --port 3000        # Run on custom port
    uvicorn http_server:app --host 0.0.0.0   # Production with uvicorn

Example:
    curl "http://localhost:8000/api/news?category=tech&limit=10&sort=relevant"
"""
import argparse
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from newsdesk import (
    NewsService,
    NewsError,
    InvalidRequest,
    DEFAULT_CATEGORY,
    SORT_RECENT,
    VERSION,
    clamp_limit,
    sort_articles,
    public_article,
    logger,
)

# Any method is routed to /api/news so that non-GET calls get the JSON error body
ROUTED_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]

router = APIRouter()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _service(request: Request) -> NewsService:
    return request.app.state.news_service


def error_response(status_code: int, message: str, headers: Optional[dict] = None,
                   api_usage: Optional[str] = None) -> JSONResponse:
    content = {
        "success": False,
        "error": message,
        "fetchedAt": _now_iso(),
    }
    if api_usage is not None:
        content["apiUsage"] = api_usage
    return JSONResponse(status_code=status_code, content=content, headers=headers)

# =============================================================================
# NEWS ENDPOINT
# =============================================================================

@router.api_route("/api/news", methods=ROUTED_METHODS)
def news_endpoint(
    request: Request,
    category: str = Query(DEFAULT_CATEGORY, description="News category"),
    limit: Optional[str] = Query(None, description="Number of articles (max 50)"),
    sort: str = Query(SORT_RECENT, description="'recent' or 'relevant'"),
):
    """
    Headlines for one category.

    Example: /api/news?category=tech&limit=10&sort=relevant
    """
    if request.method != "GET":
        return error_response(405, "Method not allowed", headers={"Allow": "GET"})

    service = _service(request)
    if not service.is_valid_category(category):
        logger.warning("Invalid category requested: %s", category)
        return error_response(400, f"Invalid category: {category}")

    news_limit = clamp_limit(limit)

    try:
        result = service.get_news(category, news_limit)
    except InvalidRequest as e:
        return error_response(e.status_code, e.message)
    except NewsError as e:
        logger.error("API error for %s: %s", category, e.message, extra={'category': category})
        return error_response(500, e.message, api_usage=service.usage.summary())
    except Exception as e:
        logger.exception("Unexpected error serving %s", category)
        return error_response(500, str(e) or "Internal server error", api_usage=service.usage.summary())

    articles = [public_article(a) for a in sort_articles(result.articles, sort)]

    return JSONResponse(content={
        "success": True,
        "category": category,
        "total": len(articles),
        "data": articles,
        "cached": result.cached,
        "fetchedAt": _now_iso(),
        "apiUsage": service.usage.summary(),
    })

# =============================================================================
# INFO ENDPOINTS
# =============================================================================

@router.get("/api/health")
async def health_endpoint(request: Request):
    """Health check endpoint."""
    return _service(request).health()


@router.get("/api/metrics")
async def metrics_endpoint(request: Request):
    """Get server metrics."""
    return _service(request).metrics_snapshot()


@router.get("/api/categories")
async def categories_endpoint(request: Request):
    """Configured categories and their cache TTLs."""
    categories = _service(request).categories
    return {
        "categories": [
            {"key": name, "ttlSeconds": config['ttl_seconds']}
            for name, config in categories.items()
        ]
    }


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "NewsDesk",
        "version": VERSION,
        "description": "Read-only headline endpoint",
        "endpoints": {
            "news": "GET /api/news?category=home&limit=20&sort=recent",
            "categories": "GET /api/categories",
            "health": "GET /api/health",
            "metrics": "GET /api/metrics"
        }
    }

# =============================================================================
# APP FACTORY
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI app."""
    service = app.state.news_service
    logger.info("NewsDesk HTTP Server starting (backend=%s, %d categories)",
                service.fetcher.backend, len(service.categories))
    yield
    logger.info("NewsDesk HTTP Server shutting down...")


def create_app(service: Optional[NewsService] = None) -> FastAPI:
    """Build the app around one NewsService that lives as long as the process."""
    app = FastAPI(
        title="NewsDesk",
        description="Read-only headline endpoint",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.news_service = service or NewsService()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()

# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Run the HTTP server."""
    parser = argparse.ArgumentParser(description="NewsDesk HTTP Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to run on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    print(f"""
NewsDesk HTTP Server running at http://{args.host}:{args.port}

  GET /api/news?category=home&limit=20&sort=recent
  GET /api/categories
  GET /api/health
  GET /api/metrics
""")

    uvicorn.run(
        "http_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info"
    )


if __name__ == "__main__":
    main()
