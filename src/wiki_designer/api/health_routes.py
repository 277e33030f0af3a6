from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    rendezvous = request.app.state.rendezvous
    return {
        "status": "ok",
        "pending_ui_results": rendezvous.pending_count(),
        "buffered_ui_results": rendezvous.buffered_count(),
    }
