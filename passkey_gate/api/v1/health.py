from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/")
def health_check(request: Request):
    settings = request.app.state.settings
    return {
        "status": "ok",
        "version": settings.VERSION,
        "rate_limiter": request.app.state.rate_limiter.get_stats(),
    }
