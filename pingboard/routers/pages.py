from fastapi import APIRouter, Request
from fastapi.responses import FileResponse, PlainTextResponse

from ..services.render import INDEX_FILE

router = APIRouter()

@router.get("/")
def index(request: Request):
    # only the published page; index.html.tmp is never served
    path = request.app.state.settings.DATA_DIR / INDEX_FILE
    if not path.is_file():
        return PlainTextResponse("not found", status_code=404)
    return FileResponse(path, media_type="text/html; charset=UTF-8")
