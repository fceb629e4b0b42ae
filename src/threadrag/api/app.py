"""FastAPI application exposing ThreadRAG turns and ingestion."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Sequence
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from threadrag.api.schemas import (
    ChatRequest,
    IndexStatsResponse,
    IngestionResponse,
    MessageModel,
    RecordIngestionRequest,
    TextIngestionRequest,
    ThreadResponse,
)
from threadrag.config import Settings, get_settings
from threadrag.embeddings import ChromaEmbeddingStore, EmbeddingConfig, SentenceEmbeddingBackend
from threadrag.errors import GenerationFailure, IndexUnavailable, InvalidParameter, TemplateNotFound
from threadrag.ingestion import DocumentIngestor, IngestionConfig, IngestionError, Ingestor, UnsupportedFileTypeError
from threadrag.memory import MemoryController, MemoryPolicy, ThreadStore
from threadrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from threadrag.models import Chunk
from threadrag.retrieval import Retriever, VectorRetriever
from threadrag.services.generation import build_models
from threadrag.services.orchestrator import GenerationOrchestrator, OrchestratorConfig, TurnOptions
from threadrag.services.prompting import PromptAssembler, TemplateRegistry, load_templates


@dataclass(frozen=True)
class AppDependencies:
    ingestor: Ingestor
    store: ChromaEmbeddingStore
    retriever: Retriever
    threads: ThreadStore
    orchestrator: GenerationOrchestrator


def _build_dependencies(settings: Settings) -> AppDependencies:
    ingestor = DocumentIngestor(
        IngestionConfig(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            splitter=settings.splitter,
        )
    )
    embedding_backend = SentenceEmbeddingBackend(
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
        ),
    )
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    store = ChromaEmbeddingStore(
        embedding_backend,
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )
    retriever = VectorRetriever(store)

    loaded = load_templates(settings.template_path) if settings.template_path else None
    assembler = PromptAssembler(TemplateRegistry.with_defaults(loaded))

    models = build_models(settings)
    threads = ThreadStore()
    memory = MemoryController(
        threads,
        models[settings.effective_summarizer_model],
        MemoryPolicy(
            summarize_threshold=settings.summarize_threshold,
            retain_messages=settings.retain_messages,
        ),
    )
    orchestrator = GenerationOrchestrator(
        threads,
        memory,
        retriever,
        assembler,
        models,
        OrchestratorConfig(
            default_template=settings.default_template,
            default_model=settings.default_model,
            grounding_enabled=settings.grounding_enabled,
            top_k=settings.retrieval_top_k,
            history_window=settings.history_window,
        ),
    )
    return AppDependencies(
        ingestor=ingestor,
        store=store,
        retriever=retriever,
        threads=threads,
        orchestrator=orchestrator,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)
    deps = dependencies or _build_dependencies(settings)

    logger = get_logger("api")
    app = FastAPI(title="ThreadRAG API", version="0.1.0")
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def _error(request: Request, status_code: int, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(InvalidParameter)
    async def handle_invalid_parameter(request: Request, exc: InvalidParameter) -> JSONResponse:
        return _error(request, status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(TemplateNotFound)
    async def handle_template_not_found(request: Request, exc: TemplateNotFound) -> JSONResponse:
        logger.error("template.missing", template=exc.name)
        return _error(request, status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(GenerationFailure)
    async def handle_generation_failure(request: Request, exc: GenerationFailure) -> JSONResponse:
        return _error(request, status.HTTP_502_BAD_GATEWAY, str(exc))

    @app.exception_handler(IndexUnavailable)
    async def handle_index_unavailable(request: Request, exc: IndexUnavailable) -> JSONResponse:
        logger.error("index.unavailable", detail=str(exc))
        return _error(request, status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    @app.exception_handler(UnsupportedFileTypeError)
    async def handle_unsupported_file(request: Request, exc: UnsupportedFileTypeError) -> JSONResponse:
        return _error(request, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, str(exc))

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        logger.error("ingestion.error", detail=str(exc))
        return _error(request, status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_orchestrator(dep: AppDependencies = Depends(get_dependencies)) -> GenerationOrchestrator:
        return dep.orchestrator

    def _index(dep: AppDependencies, chunks: Sequence[Chunk]) -> IngestionResponse:
        dep.retriever.index(chunks)
        sources = {
            str(chunk.metadata.get("display_name") or chunk.metadata.get("source") or chunk.source_id)
            for chunk in chunks
        }
        return IngestionResponse(sources=sorted(sources), chunk_count=len(chunks))

    @app.post("/threads/{thread_id}/chat")
    async def chat(
        thread_id: str,
        payload: ChatRequest,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> StreamingResponse:
        question = payload.messages[-1]
        if question.role != "user":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Last message must come from the user")
        options = TurnOptions(
            template_name=payload.template,
            model_name=payload.model,
            grounded=payload.grounded,
            top_k=payload.top_k,
        )
        tokens = orchestrator.handle_turn(thread_id, question.content, options)
        # Prime the stream so configuration errors become HTTP errors before any byte is sent
        try:
            first = await anext(tokens)
        except StopAsyncIteration:
            first = ""

        async def body() -> AsyncIterator[str]:
            try:
                if first:
                    yield first
                async for token in tokens:
                    yield token
            except GenerationFailure as exc:
                logger.error("chat.stream_failed", thread_id=thread_id, detail=str(exc))
                # Headers are already sent; aborting the body is the only failure signal left
                raise
            finally:
                await tokens.aclose()

        return StreamingResponse(body(), media_type="text/plain; charset=utf-8")

    @app.get("/threads/{thread_id}", response_model=ThreadResponse)
    async def get_thread(thread_id: str, dep: AppDependencies = Depends(get_dependencies)) -> ThreadResponse:
        if thread_id not in dep.threads:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown thread: {thread_id}")
        thread = dep.threads.get(thread_id)
        return ThreadResponse(
            thread_id=thread.thread_id,
            summary=thread.summary,
            messages=[
                MessageModel(id=m.id, role=m.role.value, content=m.content, created_order=m.created_order)
                for m in thread.messages
            ],
        )

    @app.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_thread(thread_id: str, dep: AppDependencies = Depends(get_dependencies)) -> Response:
        if not dep.threads.delete(thread_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown thread: {thread_id}")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/documents/text", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_text(
        payload: TextIngestionRequest,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> IngestionResponse:
        prefix = (payload.source_id or "").strip() or f"text-{uuid4().hex}"
        chunks: list[Chunk] = []
        for index, text in enumerate(payload.texts):
            if text and text.strip():
                chunks.extend(dep.ingestor.ingest_text(f"{prefix}-{index}", text))
        if not chunks:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No non-empty text provided")
        return _index(dep, chunks)

    @app.post("/documents/records", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_records(
        payload: RecordIngestionRequest,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> IngestionResponse:
        source_id = (payload.source_id or "").strip() or f"records-{uuid4().hex}"
        chunks = dep.ingestor.ingest_records(source_id, payload.records, payload.fields)
        if not chunks:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Records rendered no text")
        return _index(dep, chunks)

    @app.post("/documents", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
    async def upload_documents(
        files: list[UploadFile] = File(...),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> IngestionResponse:
        if len(files) > settings.max_files:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Too many files")
        limit = settings.max_upload_size_mb * 1024 * 1024
        with tempfile.TemporaryDirectory() as tmpdir:
            saved: list[Path] = []
            for upload in files:
                filename = Path(upload.filename or f"upload-{uuid4().hex}").name
                suffix = Path(filename).suffix.lower()
                if suffix not in settings.allowed_extensions_tuple:
                    await upload.close()
                    raise HTTPException(
                        status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                        detail=f"Unsupported file type: {suffix or 'unknown'}",
                    )
                content = await upload.read()
                await upload.close()
                if not content:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"File is empty: {filename}")
                if len(content) > limit:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=f"File too large (>{settings.max_upload_size_mb}MB): {filename}",
                    )
                destination = Path(tmpdir) / filename
                destination.write_bytes(content)
                saved.append(destination)
            chunks = dep.ingestor.ingest(saved)
        return _index(dep, chunks)

    @app.get("/index/stats", response_model=IndexStatsResponse)
    async def index_stats(dep: AppDependencies = Depends(get_dependencies)) -> IndexStatsResponse:
        return IndexStatsResponse(
            collection=settings.chroma_collection,
            total_chunks=dep.store.count(),
            threads=len(dep.threads),
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from threadrag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    return app


app = create_app()
