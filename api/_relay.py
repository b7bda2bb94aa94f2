# api/_relay.py
import copy
import logging
from typing import Any, Dict, List, Literal, Optional

import google.generativeai as genai
from fastapi.concurrency import run_in_threadpool
from langfuse import Langfuse
from pydantic import BaseModel, ValidationError

from api._settings import Settings

logger = logging.getLogger("chat_relay")

# --- System Preamble ---
SYSTEM_PROMPT = (
    "Você é um(a) professor(a) e consultor(a) pedagógico(a) altamente especializado(a) no 5º ano "
    "do Ensino Fundamental, com conhecimento aprofundado da BNCC e experiência no trabalho com alunos "
    "de aproximadamente 10 anos de idade. Sua atuação deve ser exclusivamente voltada ao 5º ano, com "
    "foco no desenvolvimento das competências cognitivas, socioemocionais e comunicativas dessa fase de "
    "transição entre os anos iniciais e finais do Ensino Fundamental. Temas centrais: Leitura crítica e "
    "interpretação avançada de textos diversos (fábulas, notícias, artigos, quadrinhos); Produção textual "
    "estruturada com argumentação básica e revisão textual; Resolução de problemas matemáticos mais "
    "complexos, múltiplos significados das operações, frações e unidades de medida; Geografia e História "
    "com foco em sociedade, cultura, direitos e deveres; Ciências naturais com ênfase na observação, "
    "pesquisa e cuidado com o meio ambiente; Integração de tecnologias digitais, cidadania e pesquisa "
    "escolar orientada. Em suas respostas: Use uma linguagem objetiva, motivadora e compatível com o "
    "perfil do(a) educador(a) do 5º ano; Traga sugestões de projetos interdisciplinares, atividades "
    "desafiadoras, vídeos, recursos online e avaliações diagnósticas; Fundamente sempre com as "
    "habilidades da BNCC do 5º ano; Ofereça, quando pedido, materiais complementares, links confiáveis "
    "e bibliografia atualizada. ⚠️ Importante: Se o tema abordado estiver fora do 5º ano, diga "
    "gentilmente: “Esse conteúdo não faz parte do escopo do 5º ano do Ensino Fundamental. Estou aqui "
    "exclusivamente para tratar dos assuntos relacionados a essa etapa, conforme as diretrizes da BNCC.”"
)
PREAMBLE_ACK = (
    "Olá! Entendido. Estou pronto para ajudar com orientações pedagógicas "
    "para o 5º ano do Ensino Fundamental."
)

SYSTEM_PREAMBLE = (
    {"role": "user", "parts": [{"text": SYSTEM_PROMPT}]},
    {"role": "model", "parts": [{"text": PREAMBLE_ACK}]},
)


# --- Pydantic Models for Request/Response Bodies ---
class Part(BaseModel):
    text: str


class Message(BaseModel):
    role: Literal["user", "model"]
    parts: List[Part]


class ChatRequest(BaseModel):
    history: List[Message]


class ChatResponse(BaseModel):
    text: str


class ErrorResponse(BaseModel):
    error: str


# --- Error Taxonomy ---
class RelayError(Exception):
    """Base error; carries the status code and the only message the caller sees."""

    status_code = 500
    public_message = "internal error communicating with the AI"


class MethodNotAllowed(RelayError):
    status_code = 405
    public_message = "method not allowed"


class ConfigurationError(RelayError):
    status_code = 500
    public_message = "server configuration incomplete"


class RequestError(RelayError):
    status_code = 400
    public_message = "invalid conversation history"


class UpstreamError(RelayError):
    status_code = 500
    public_message = "internal error communicating with the AI"


# --- History Helpers ---
def parse_chat_request(payload: Any) -> ChatRequest:
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as e:
        logger.warning("Rejected chat request: %s", e.errors(include_url=False))
        raise RequestError("request body does not match the chat schema") from e


def last_user_message(history: List[Message]) -> str:
    """Returns the first text part of the last turn, or raises RequestError."""
    if not history:
        logger.warning("Rejected chat request: history is empty")
        raise RequestError("history is empty")
    last_turn = history[-1]
    if not last_turn.parts:
        logger.warning("Rejected chat request: last turn has no parts")
        raise RequestError("last turn has no parts")
    return last_turn.parts[0].text


def build_context(history: List[Message]) -> List[Dict[str, Any]]:
    return copy.deepcopy(list(SYSTEM_PREAMBLE)) + [message.model_dump() for message in history]


# --- Relay ---
class ChatRelay:
    """Forwards one conversation to Gemini per call and returns the reply text.

    The model handle and the optional Langfuse client are built once; each
    call opens its own chat session, so concurrent calls share nothing
    mutable.
    """

    def __init__(self, settings: Settings, model: Any = None, langfuse: Optional[Langfuse] = None):
        self.settings = settings
        self.model = model
        self.langfuse = langfuse

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatRelay":
        if not settings.is_complete:
            logger.error("GEMINI_API_KEY is not set; chat requests will be rejected.")
            return cls(settings)

        genai.configure(api_key=settings.gemini_api_key)
        model = genai.GenerativeModel(settings.gemini_model)

        langfuse = None
        if settings.tracing_enabled:
            langfuse = Langfuse(
                secret_key=settings.langfuse_secret_key,
                public_key=settings.langfuse_public_key,
                host=settings.langfuse_host,
            )
        return cls(settings, model=model, langfuse=langfuse)

    def ensure_configured(self) -> None:
        if not self.settings.is_complete or self.model is None:
            logger.error("Chat request rejected: GEMINI_API_KEY is not configured.")
            raise ConfigurationError("GEMINI_API_KEY is not configured")

    async def relay(self, history: List[Message]) -> str:
        self.ensure_configured()
        user_message = last_user_message(history)
        context = build_context(history)
        logger.info("Relaying chat: model=%s history_turns=%s", self.settings.gemini_model, len(history))

        trace = generation_span = None
        if self.langfuse is not None:
            trace = self.langfuse.trace(name="chat-relay", input={"message": user_message})
            generation_span = trace.span(name="generation", input={"history": context})

        try:
            chat_session = self.model.start_chat(history=context)
            response = await chat_session.send_message_async(user_message)
            text = response.text
            if not text:
                raise ValueError("Gemini returned an empty reply")
        except Exception as e:
            logger.exception("Error while communicating with Gemini")
            if trace is not None:
                generation_span.end(output={"error": str(e)}, level="ERROR")
                trace.update(output={"error": str(e)}, level="ERROR")
                await run_in_threadpool(self.langfuse.flush)
            raise UpstreamError(str(e)) from e

        if trace is not None:
            generation_span.end(output={"answer": text})
            trace.update(output={"final_answer": text})
            await run_in_threadpool(self.langfuse.flush)
        return text
