import logging
from typing import List, Literal, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import StreamingResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from gemini_service import stream_answer
from relay import STREAM_HEADERS, open_relay
from settings import LOG_FORMAT, LOG_LEVEL, RELAY_HOST, RELAY_PORT

logger = logging.getLogger(__name__)

app = FastAPI(title="Page Answer Relay")


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Part(BaseModel):
    text: str = ""


class HistoryTurn(BaseModel):
    role: Literal["user", "model"]
    parts: List[Part] = Field(default_factory=list)


class GeminiRequest(BaseModel):
    prompt: Optional[str] = None
    conversationHistory: List[HistoryTurn] = Field(default_factory=list)


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError):
    """Malformed bodies get the same {error} shape as a missing prompt."""
    fields = [str(err["loc"][1]) for err in exc.errors() if len(err.get("loc", ())) > 1]
    if not fields or "prompt" in fields:
        return JSONResponse(status_code=400, content={"error": "Prompt is required"})
    return JSONResponse(status_code=400, content={"error": f"Invalid {fields[0]}"})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/gemini")
async def api_gemini(req: GeminiRequest, request: Request):
    """
    Streams a cleaned plain-text answer for `prompt`.
    Errors before the first byte come back as JSON {error}; errors after
    that end the body with an in-band marker.
    """
    if not req.prompt or not req.prompt.strip():
        return JSONResponse(status_code=400, content={"error": "Prompt is required"})

    history = [turn.model_dump() for turn in req.conversationHistory]
    try:
        relay = await open_relay(stream_answer(req.prompt, history))
    except Exception:
        logger.exception("Error with Gemini API")
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    return StreamingResponse(
        relay.stream(request.is_disconnected),
        media_type="text/plain; charset=utf-8",
        headers=STREAM_HEADERS,
    )


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    uvicorn.run("main:app", host=RELAY_HOST, port=RELAY_PORT)
