"""Main Quart application for the support desk knowledge service."""
import tempfile
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError
from quart import Quart, current_app, jsonify, request
import structlog

from supportdesk import config
from supportdesk.db import Database
from supportdesk.errors import (
    ConfigurationError,
    ConversationNotFoundError,
    EmbeddingError,
    GenerationError,
    IngestionError,
)
from supportdesk.llm_client import ModelBackend
from supportdesk.log_config import configure_logging
from supportdesk.memory.manager import MODE_HUMAN
from supportdesk.rag.extract import SUPPORTED_EXTENSIONS
from supportdesk.services import Services, build_services

logger = structlog.get_logger()


# Request bodies


class KnowledgeCreate(BaseModel):
    text: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    original_name: Optional[str] = None


class KnowledgeUpdate(BaseModel):
    content: str = Field(min_length=1)


class KnowledgeImportUrl(BaseModel):
    url: HttpUrl


class KnowledgePush(BaseModel):
    question: Optional[str] = None
    answer: Optional[str] = None
    source: Optional[str] = None


class ConversationCreate(BaseModel):
    category_id: Optional[int] = None


class MessageCreate(BaseModel):
    sender: Literal["user", "ai", "agent"]
    content: str = Field(min_length=1, max_length=config.MAX_MESSAGE_LENGTH)
    is_internal: bool = False


class QueryRequest(BaseModel):
    conversation_id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=config.MAX_MESSAGE_LENGTH)
    page_context: Optional[str] = None


class AgentRequest(BaseModel):
    agent_id: str = Field(min_length=1)


async def _parse(model: type[BaseModel]):
    data = await request.get_json(silent=True)
    return model.model_validate(data or {})


def _services() -> Services:
    return current_app.extensions["supportdesk"]


def _ingest_error_response(error: IngestionError):
    body = {
        "error": str(error),
        "step": error.step,
        "entry_id": error.entry_id,
        "chunk_count": error.chunk_count,
        "embedded_count": error.embedded_count,
    }
    # Embedding failures come from the backend, the rest from the input
    status = 502 if error.step == "embedding" else 400
    return jsonify(body), status


def create_app(
    database: Optional[Database] = None,
    backend: Optional[ModelBackend] = None,
    services: Optional[Services] = None,
) -> Quart:
    """Create the Quart application.

    Args:
        database: Store to use (default: SQLite file at DB_PATH)
        backend: Model backend (default: Ollama at OLLAMA_BASE_URL)
        services: Prebuilt components; overrides ``database`` and ``backend``
    """
    configure_logging()

    app = Quart(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES
    app.extensions["supportdesk"] = services or build_services(database, backend)

    register_routes(app)
    return app


def register_routes(app: Quart) -> None:
    @app.before_serving
    async def startup():
        services = _services()
        services.database.init_database()
        services.cache.purge_expired()
        logger.info("app_started", configured=services.backend.is_configured)

    @app.after_serving
    async def shutdown():
        await _services().tasks.drain()
        logger.info("app_stopped")

    # ------------------------------------------------------------------
    # Knowledge base

    @app.route("/api/knowledge", methods=["POST"])
    async def create_knowledge():
        """Add a document from raw text.

        Expects JSON body:
        {
            "text": "document text",
            "filename": "refunds.md",
            "original_name": "optional display name"
        }

        Returns JSON (201):
        {"entry_id": 1, "chunk_count": 3, "embedding_count": 3}
        """
        payload = await _parse(KnowledgeCreate)
        try:
            result = await _services().ingest.ingest(
                payload.text,
                filename=payload.filename,
                original_name=payload.original_name or payload.filename,
                file_type="text/plain",
                file_size=len(payload.text.encode("utf-8")),
            )
        except IngestionError as e:
            return _ingest_error_response(e)
        return jsonify(result.__dict__), 201

    @app.route("/api/knowledge/upload", methods=["POST"])
    async def upload_knowledge():
        """Add a document from a multipart file upload (field name 'file')."""
        files = await request.files
        upload = files.get("file")
        if upload is None or not upload.filename:
            return jsonify({"error": "Missing 'file' in form data"}), 400

        filename = Path(upload.filename).name
        if Path(filename).suffix.lower() not in SUPPORTED_EXTENSIONS:
            return jsonify({
                "error": "Unsupported file type",
                "supported": sorted(SUPPORTED_EXTENSIONS),
            }), 400

        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / filename
            await upload.save(path)
            try:
                result = await _services().ingest.ingest_file(path, filename=filename)
            except IngestionError as e:
                return _ingest_error_response(e)

        return jsonify(result.__dict__), 201

    @app.route("/api/knowledge/import-url", methods=["POST"])
    async def import_url():
        """Fetch a web page and add its text to the knowledge base.

        Expects JSON body:
        {"url": "https://example.com/faq"}

        Returns JSON (201):
        {"entry_id": 4, "chunk_count": 2, "embedding_count": 2, "title": "FAQ", "content_length": 1450}
        """
        payload = await _parse(KnowledgeImportUrl)
        services = _services()
        try:
            result = await services.ingest.ingest_url(str(payload.url))
        except IngestionError as e:
            return _ingest_error_response(e)

        entry = services.database.get_entry(result.entry_id)
        return jsonify({
            **result.__dict__,
            "title": entry["original_name"],
            "content_length": len(entry["content"]),
        }), 201

    @app.route("/api/knowledge", methods=["GET"])
    async def list_knowledge():
        return jsonify({"entries": _services().database.list_entries()})

    @app.route("/api/knowledge/<int:entry_id>", methods=["GET"])
    async def get_knowledge(entry_id: int):
        entry = _services().database.get_entry(entry_id)
        if entry is None or not entry["active"]:
            return jsonify({"error": "Knowledge entry not found"}), 404
        return jsonify(entry)

    @app.route("/api/knowledge/<int:entry_id>", methods=["PUT"])
    async def update_knowledge(entry_id: int):
        """Replace an entry's content; it is re-chunked and re-embedded."""
        payload = await _parse(KnowledgeUpdate)
        try:
            result = await _services().ingest.update(entry_id, payload.content)
        except KeyError:
            return jsonify({"error": "Knowledge entry not found"}), 404
        except IngestionError as e:
            return _ingest_error_response(e)
        return jsonify(result.__dict__)

    @app.route("/api/knowledge/<int:entry_id>", methods=["DELETE"])
    async def delete_knowledge(entry_id: int):
        """Soft-delete an entry.

        Returns:
            204 No Content if successful
            404 Not Found if the entry doesn't exist
        """
        if _services().ingest.delete(entry_id):
            return "", 204
        return jsonify({"error": "Knowledge entry not found"}), 404

    @app.route("/api/knowledge/<int:entry_id>/reembed", methods=["POST"])
    async def reembed_knowledge(entry_id: int):
        try:
            result = await _services().ingest.reembed(entry_id)
        except KeyError:
            return jsonify({"error": "Knowledge entry not found"}), 404
        except IngestionError as e:
            return _ingest_error_response(e)
        return jsonify(result.__dict__)

    @app.route("/api/knowledge/push", methods=["POST"])
    async def push_knowledge():
        """Save a conversation snippet as knowledge.

        Expects JSON body with at least one of "question" and "answer".
        """
        payload = await _parse(KnowledgePush)
        try:
            result = await _services().ingest.push(
                question=payload.question, answer=payload.answer, source=payload.source
            )
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except IngestionError as e:
            return _ingest_error_response(e)
        return jsonify(result.__dict__), 201

    # ------------------------------------------------------------------
    # Conversations

    @app.route("/api/conversations", methods=["POST"])
    async def create_conversation():
        payload = await _parse(ConversationCreate)
        conversations = _services().conversations
        conversation_id = conversations.create_conversation(category_id=payload.category_id)
        return jsonify(conversations.get_conversation(conversation_id)), 201

    @app.route("/api/conversations/<conversation_id>/messages", methods=["POST"])
    async def add_conversation_message(conversation_id: str):
        """Record a message.

        Public agent replies are learned into the knowledge base in the
        background.

        Expects JSON body:
        {
            "sender": "user" | "ai" | "agent",
            "content": "message text",
            "is_internal": false
        }
        """
        payload = await _parse(MessageCreate)
        services = _services()
        services.conversations.get_conversation(conversation_id)

        message_id = services.conversations.add_message(
            conversation_id,
            payload.sender,
            payload.content.strip(),
            is_internal=payload.is_internal,
        )

        if payload.sender == "agent" and not payload.is_internal:
            services.tasks.spawn(
                services.learner.learn(conversation_id, payload.content.strip()),
                name="learn_agent_reply",
            )

        return jsonify({"message_id": message_id, "conversation_id": conversation_id}), 201

    @app.route("/api/ai/query", methods=["POST"])
    async def ai_query():
        """Answer a customer question.

        Expects JSON body:
        {
            "conversation_id": "uuid",
            "message": "customer question",
            "page_context": "optional page the customer is on"
        }

        Returns JSON:
        {
            "response": "answer text",
            "confidence": 0.9,
            "needs_human": false,
            "sources": [{"filename": "...", "similarity": 0.82}],
            "language": "en",
            "cached": false
        }
        """
        payload = await _parse(QueryRequest)
        services = _services()

        conversation = services.conversations.get_conversation(payload.conversation_id)
        if conversation["mode"] == MODE_HUMAN:
            return jsonify({"error": "Conversation is handled by a human agent"}), 409

        category = services.conversations.get_category(payload.conversation_id)

        logger.info(
            "ai_query_received",
            conversation_id=payload.conversation_id,
            message_length=len(payload.message),
            has_category=category is not None,
        )

        result = await services.engine.query(
            payload.conversation_id,
            payload.message.strip(),
            category=category,
            page_context=payload.page_context,
        )

        return jsonify({
            "response": result.answer,
            "confidence": result.confidence,
            "needs_human": result.needs_human,
            "sources": result.sources,
            "language": result.language,
            "cached": result.cached,
        })

    @app.route("/api/conversations/<conversation_id>/escalate", methods=["POST"])
    async def escalate_conversation(conversation_id: str):
        transition = _services().conversations.escalate(conversation_id)
        return jsonify(transition.__dict__)

    @app.route("/api/conversations/<conversation_id>/takeover", methods=["POST"])
    async def takeover_conversation(conversation_id: str):
        payload = await _parse(AgentRequest)
        transition = _services().conversations.takeover(conversation_id, payload.agent_id)
        return jsonify(transition.__dict__)

    @app.route("/api/conversations/<conversation_id>/return-to-ai", methods=["POST"])
    async def return_conversation_to_ai(conversation_id: str):
        """Hand the conversation back to the AI. Only the assigned agent may do this."""
        payload = await _parse(AgentRequest)
        conversations = _services().conversations

        conversation = conversations.get_conversation(conversation_id)
        assigned = conversation["assigned_agent"]
        if conversation["mode"] == MODE_HUMAN and assigned and assigned != payload.agent_id:
            logger.warning(
                "return_to_ai_forbidden",
                conversation_id=conversation_id,
                agent_id=payload.agent_id,
                assigned_agent=assigned,
            )
            return jsonify({"error": "Only the assigned agent can return this conversation"}), 403

        transition = conversations.return_to_ai(conversation_id)
        return jsonify(transition.__dict__)

    # ------------------------------------------------------------------
    # Health

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check if app can serve requests.

        Checks:
        - Model backend is configured
        - Database is reachable
        """
        services = _services()
        checks = {
            "status": "healthy",
            "backend_configured": services.backend.is_configured,
            "database": False,
        }

        try:
            checks["knowledge_entries"] = services.database.count_entries()
            checks["database"] = True
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            checks["error"] = str(e)

        if not (checks["database"] and checks["backend_configured"]):
            checks["status"] = "unhealthy"

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    # ------------------------------------------------------------------
    # Errors

    @app.errorhandler(ValidationError)
    async def invalid_request(error):
        return jsonify({
            "error": "Invalid request body",
            "details": error.errors(include_url=False, include_context=False),
        }), 400

    @app.errorhandler(ConversationNotFoundError)
    async def conversation_not_found(error):
        return jsonify({"error": "Conversation not found"}), 404

    @app.errorhandler(ConfigurationError)
    async def not_configured(error):
        logger.error("ai_service_not_configured", error=str(error))
        return jsonify({"error": "AI service not configured"}), 503

    @app.errorhandler(EmbeddingError)
    @app.errorhandler(GenerationError)
    async def generation_failed(error):
        logger.error("ai_service_unavailable", error=str(error), error_type=type(error).__name__)
        return jsonify({"error": "AI service unavailable"}), 502

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        """Handle 500 errors."""
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
