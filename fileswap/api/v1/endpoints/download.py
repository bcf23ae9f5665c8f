"""File download endpoint"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from fileswap.services.file_swap import FileSwapHandler

router = APIRouter()


def get_file_swap(request: Request) -> FileSwapHandler:
    """Handler owned by the running application"""
    return request.app.state.file_swap


@router.get("/download", response_class=StreamingResponse)
def download_file(
    token: Optional[str] = Query(None, description="Download token"),
    file_swap: FileSwapHandler = Depends(get_file_swap),
):
    """
    Download a file by its one-time token.

    The file is deleted once served. Invalid, expired and already used tokens
    are rejected with 400.
    """
    return file_swap.handle_download_request(token)
