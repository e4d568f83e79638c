import os
import sys
import pathlib
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Tuple

import tiktoken
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from openai import OpenAI

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("qa_app")

APP_DIR = pathlib.Path(__file__).resolve().parent


# -----------------------------
# Configuration (env vars)
# -----------------------------
# Gemini, reached through its OpenAI-compatible endpoint
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# Corpus
DATA_DIR = os.getenv("DATA_DIR", "data")
PUBLIC_DIR = os.getenv("PUBLIC_DIR", "public")
CORPUS_REFRESH = os.getenv("CORPUS_REFRESH", "startup")
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "1000000"))  # 0 disables the bound

# Persona
COMPANY_NAME = os.getenv("COMPANY_NAME", "当社")
PERSONA_PATH = os.getenv("PERSONA_PATH", "")

CORPUS_EXT = ".txt"
REFRESH_STARTUP = "startup"
REFRESH_REQUEST = "request"
REFRESH_MODES = {REFRESH_STARTUP, REFRESH_REQUEST}

DEFAULT_PERSONA_TEMPLATE = "\n".join(
    [
        "あなたは、{company}の総務担当のチャットボットです。",
        "従業員からの問い合わせに、親切かつ簡潔・丁寧な言葉遣いで回答してください。",
        "これから渡す「社内情報」のテキストだけを情報源としてください。",
        "「社内情報」に記載されていない質問については、「申し訳ありませんが、その件については分かりかねます。」とだけ回答してください。",
        "一般的な知識や、あなたの意見、推測を答えてはいけません。",
        "情報の出所や、あなたがAIであることを明かす必要はありません。",
    ]
)
DEFAULT_PERSONA = DEFAULT_PERSONA_TEMPLATE.format(company=COMPANY_NAME)
PERSONA = DEFAULT_PERSONA
PERSONA_SOURCE = "default"
PERSONA_PATH_RESOLVED: Optional[str] = None

CONTEXT_LABEL = "--- 以下は回答の根拠となる社内情報です ---"
QUESTION_LABEL = "--- 従業員からの質問 ---"


# -----------------------------
# Errors
# -----------------------------
class AppError(Exception):
    """Base for errors rendered as ``{"error": message}``.

    ``message`` is what the client sees; ``str(exc)`` keeps the internal
    detail for the log only.
    """

    status_code = 500
    message = "サーバーでエラーが発生しました。"


class ValidationError(AppError):
    status_code = 400
    message = "質問が入力されていません。"


class CorpusLoadError(AppError):
    status_code = 500
    message = "申し訳ありません。内部情報の読み込みに失敗しました。"


class CorpusTooLargeError(CorpusLoadError):
    status_code = 413
    message = "内部情報のサイズが上限を超えています。"


class UpstreamError(AppError):
    status_code = 500
    message = "AIとの通信中にエラーが発生しました。"


# -----------------------------
# Helpers
# -----------------------------
def _format_env_value(key: str, value: Optional[str]) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key == "GEMINI_API_KEY":
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def _resolve_path(path_value: str) -> pathlib.Path:
    path = pathlib.Path(path_value)
    if not path.is_absolute():
        path = (APP_DIR / path).resolve()
    return path


def load_persona() -> Tuple[str, str, Optional[str]]:
    if not PERSONA_PATH:
        return DEFAULT_PERSONA, "default", None

    path = _resolve_path(PERSONA_PATH)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Persona file not found: %s. Falling back to default.", path)
        return DEFAULT_PERSONA, "default", str(path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read persona file %s: %s. Falling back to default.", path, exc)
        return DEFAULT_PERSONA, "default", str(path)

    text = text.strip()
    if text == "":
        logger.warning("Persona file %s is empty. Falling back to default.", path)
        return DEFAULT_PERSONA, "default", str(path)
    return text, "file", str(path)


def reload_persona() -> None:
    global PERSONA, PERSONA_SOURCE, PERSONA_PATH_RESOLVED
    PERSONA, PERSONA_SOURCE, PERSONA_PATH_RESOLVED = load_persona()


def log_env_config() -> None:
    values = {
        "GEMINI_API_KEY": GEMINI_API_KEY,
        "GEMINI_MODEL": GEMINI_MODEL,
        "GEMINI_BASE_URL": GEMINI_BASE_URL,
        "LLM_TIMEOUT_SECONDS": LLM_TIMEOUT_SECONDS,
        "HOST": HOST,
        "PORT": PORT,
        "DATA_DIR": str(_resolve_path(DATA_DIR)),
        "PUBLIC_DIR": str(_resolve_path(PUBLIC_DIR)),
        "CORPUS_REFRESH": CORPUS_REFRESH,
        "MAX_CONTEXT_CHARS": MAX_CONTEXT_CHARS,
        "COMPANY_NAME": COMPANY_NAME,
        "PERSONA_PATH": PERSONA_PATH,
        "PERSONA_PATH_RESOLVED": PERSONA_PATH_RESOLVED,
        "PERSONA_SOURCE": PERSONA_SOURCE,
        "PERSONA_LENGTH": len(PERSONA or ""),
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))


def require_api_key() -> str:
    if not GEMINI_API_KEY:
        raise RuntimeError("Missing GEMINI_API_KEY")
    return GEMINI_API_KEY


def now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


def get_tokenizer():
    # Gemini has no local tokenizer; cl100k_base is close enough for an estimate
    return tiktoken.get_encoding("cl100k_base")


def compute_corpus_stats(files: List[str], context: str) -> Dict[str, Any]:
    if not context:
        return {"files": len(files), "chars": 0, "tokens": 0}
    enc = get_tokenizer()
    return {
        "files": len(files),
        "chars": len(context),
        "tokens": len(enc.encode(context)),
    }


# -----------------------------
# Corpus loading
# -----------------------------
def list_corpus_files(data_dir) -> List[str]:
    """Return the ``.txt`` entries of ``data_dir`` in ascending name order."""
    path = pathlib.Path(data_dir)
    try:
        names = sorted(os.listdir(path))
    except OSError as exc:
        raise CorpusLoadError(f"Cannot list corpus directory {path}: {exc}") from exc
    return [name for name in names if pathlib.Path(name).suffix == CORPUS_EXT and (path / name).is_file()]


def read_corpus(data_dir) -> List[Tuple[str, str]]:
    """Read every corpus file as ``(filename, text)`` pairs.

    Any unreadable file aborts the whole read. Invalid UTF-8 bytes are
    replaced with U+FFFD.
    """
    path = pathlib.Path(data_dir)
    corpus: List[Tuple[str, str]] = []
    for name in list_corpus_files(path):
        try:
            # bytes are decoded as-is, no newline translation
            text = (path / name).read_bytes().decode("utf-8", errors="replace")
        except OSError as exc:
            raise CorpusLoadError(f"Cannot read corpus file {path / name}: {exc}") from exc
        corpus.append((name, text))
    return corpus


def build_context(corpus: List[Tuple[str, str]], max_chars: Optional[int] = None) -> str:
    parts: List[str] = []
    size = 0
    for name, text in corpus:
        block = f"--- {name}からの情報 ---\n{text}\n\n"
        size += len(block)
        if max_chars and size > max_chars:
            raise CorpusTooLargeError(f"Corpus exceeds {max_chars} characters at {name}")
        parts.append(block)
    return "".join(parts)


def load_corpus(data_dir, max_chars: Optional[int] = None) -> str:
    return build_context(read_corpus(data_dir), max_chars)


class ContextCache:
    """Process-wide holder of the context string.

    In ``startup`` mode the corpus is loaded once and reloaded only when the
    cached value is empty. In ``request`` mode every ``get()`` reloads.
    """

    def __init__(self, data_dir, max_chars: Optional[int] = None, mode: str = REFRESH_STARTUP):
        if mode not in REFRESH_MODES:
            raise ValueError(f"Unknown corpus refresh mode: {mode!r}")
        self.data_dir = pathlib.Path(data_dir)
        self.max_chars = max_chars or None
        self.mode = mode
        self.context = ""
        self.files: List[str] = []
        self.loaded_at: Optional[str] = None
        self.last_load_failed = False

    def is_loaded(self) -> bool:
        return bool(self.context)

    def load(self) -> str:
        try:
            corpus = read_corpus(self.data_dir)
            context = build_context(corpus, self.max_chars)
        except CorpusLoadError as exc:
            self.last_load_failed = True
            logger.error("Failed to load corpus from %s: %s", self.data_dir, exc)
            raise

        self.context = context
        self.files = [name for name, _ in corpus]
        self.loaded_at = now_iso()
        self.last_load_failed = False
        logger.info("Loaded %d corpus files (%d chars) from %s", len(self.files), len(context), self.data_dir)
        return context

    def get(self) -> str:
        if self.mode == REFRESH_REQUEST:
            return self.load()
        if not self.context:
            try:
                self.load()
            except CorpusTooLargeError:
                raise
            except CorpusLoadError:
                logger.warning("Corpus reload failed; answering with an empty context.")
                return ""
        return self.context

    def invalidate(self) -> None:
        self.context = ""
        self.files = []
        self.loaded_at = None

    def stats(self) -> Dict[str, Any]:
        stats = compute_corpus_stats(self.files, self.context)
        stats.update(
            {
                "loaded": self.is_loaded(),
                "loaded_at": self.loaded_at,
                "last_load_failed": self.last_load_failed,
                "refresh_mode": self.mode,
                "file_names": list(self.files),
            }
        )
        return stats


# -----------------------------
# Prompt + generation
# -----------------------------
def assemble_prompt(context: str, question: str, persona: Optional[str] = None) -> List[str]:
    # question goes in verbatim; callers are trusted employees
    return [
        persona if persona is not None else PERSONA,
        CONTEXT_LABEL,
        context,
        QUESTION_LABEL,
        f'質問: "{question}"',
    ]


def openai_client() -> OpenAI:
    return OpenAI(
        api_key=require_api_key(),
        base_url=GEMINI_BASE_URL,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=0,
    )


def extract_answer_text(response_obj: Any) -> Optional[str]:
    # None means malformed; an empty string is a valid answer
    try:
        content = response_obj.choices[0].message.content
    except (AttributeError, IndexError, KeyError, TypeError):
        return None
    return content if isinstance(content, str) else None


class AnswerService:
    def __init__(self, client: OpenAI, model: str = GEMINI_MODEL):
        self.client = client
        self.model = model

    def answer(self, segments: List[str]) -> str:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": "\n".join(segments)}],
            )
        except Exception as exc:
            logger.exception("Generation request to %s failed", self.model)
            raise UpstreamError(str(exc)) from exc

        text = extract_answer_text(resp)
        if text is None:
            logger.error("Malformed generation response from %s: %r", self.model, resp)
            raise UpstreamError("Malformed generation response")
        return text


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="General-affairs Q&A (Gemini + local corpus)")

app.state.context_cache = ContextCache(
    _resolve_path(DATA_DIR),
    max_chars=MAX_CONTEXT_CHARS,
    mode=CORPUS_REFRESH,
)


class AskRequest(BaseModel):
    question: Optional[str] = None


class AskResponse(BaseModel):
    answer: str


def get_context_cache(request: Request) -> ContextCache:
    return request.app.state.context_cache


def get_answer_service(request: Request) -> AnswerService:
    service = getattr(request.app.state, "answer_service", None)
    if service is None:
        service = AnswerService(openai_client(), GEMINI_MODEL)
        request.app.state.answer_service = service
    return service


@app.exception_handler(AppError)
def handle_app_error(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    # /ask reports any unusable body as a missing question
    if request.url.path == "/ask":
        logger.info("Rejected /ask body: %s", exc.errors())
        return handle_app_error(request, ValidationError("invalid request body"))
    return await request_validation_exception_handler(request, exc)


@app.on_event("startup")
def startup_event():
    require_api_key()
    reload_persona()
    log_env_config()
    cache: ContextCache = app.state.context_cache
    if cache.mode == REFRESH_REQUEST:
        return
    try:
        cache.load()
    except CorpusLoadError:
        logger.warning("Starting with an empty context; the corpus will be retried on the next request.")


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/status")
def status(cache: ContextCache = Depends(get_context_cache)):
    stats = cache.stats()
    stats.update(
        {
            "data_dir": str(cache.data_dir),
            "max_chars": cache.max_chars,
            "model": GEMINI_MODEL,
            "persona_source": PERSONA_SOURCE,
        }
    )
    return stats


@app.post("/api/reload")
def reload_corpus(cache: ContextCache = Depends(get_context_cache)):
    # load() keeps the previous context when it fails
    cache.load()
    return {"ok": True, **cache.stats()}


@app.post("/ask", response_model=AskResponse)
def ask(
    req: Optional[AskRequest] = None,
    cache: ContextCache = Depends(get_context_cache),
    service: AnswerService = Depends(get_answer_service),
):
    question = req.question if req else None
    if not question:
        raise ValidationError("question is required")

    context = cache.get()
    segments = assemble_prompt(context, question)
    answer = service.answer(segments)
    return AskResponse(answer=answer)


# Mounted last so the API routes above take precedence
if _resolve_path(PUBLIC_DIR).is_dir():
    app.mount("/", StaticFiles(directory=str(_resolve_path(PUBLIC_DIR)), html=True), name="public")


def main() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    if not GEMINI_API_KEY:
        logger.error("GEMINI_API_KEY is not set. Add it to the environment or .env and restart.")
        sys.exit(1)
    uvicorn.run(app, host=HOST, port=PORT)


# Entry point for: python app.py
if __name__ == "__main__":
    main()
