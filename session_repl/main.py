"""
REPL Worker FastAPI 入口

提供脚本执行、Session 重置、健康检查等 HTTP 接口。
Session token 通过 X-Session-Token 请求头或 Cookie 传递，缺失时自动生成。
"""

import uuid
import logging
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .core.executor import IPythonExecutor
from .core.serializer import StateCodec
from .interpreter_cache import WorkerInterpreterCache
from .errors import SessionStoreError
from .models import Fault, ReplConfig
from .pipeline import EvaluationPipeline
from .session_store import SessionStore, create_session_store

logger = logging.getLogger("session_repl")

SESSION_HEADER = "X-Session-Token"


class EvalRequest(BaseModel):
    """脚本执行请求"""
    script: str = Field(..., description="要执行的脚本")


class EvalResponse(BaseModel):
    """脚本执行响应"""
    session_id: str
    output: str
    visible: bool
    state_persisted: bool


class ErrorResponse(BaseModel):
    """执行错误响应"""
    session_id: str
    error_type: str
    message: str


class ResetResponse(BaseModel):
    """重置响应"""
    session_id: str
    success: bool
    message: str


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str
    interpreters: int


def create_pipeline(
    config: ReplConfig,
    store: Optional[SessionStore] = None
) -> EvaluationPipeline:
    """根据配置组装执行流水线"""
    preload_code = config.preload_code

    def factory() -> IPythonExecutor:
        return IPythonExecutor(
            preload_code=preload_code,
            logger=logging.getLogger("session_repl.executor")
        )

    return EvaluationPipeline(
        interpreters=WorkerInterpreterCache(
            factory, logger=logging.getLogger("session_repl.interpreters")
        ),
        store=store or create_session_store(
            config, logger=logging.getLogger("session_repl.store")
        ),
        codec=StateCodec(
            secret_key=config.secret_key, logger=logging.getLogger("session_repl.codec")
        ),
        logger=logging.getLogger("session_repl.pipeline"),
    )


def create_app(
    config: Optional[ReplConfig] = None,
    store: Optional[SessionStore] = None
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        config: 服务配置，不指定则从配置文件加载
        store: Session 存储，不指定则按配置创建

    Returns:
        FastAPI 应用
    """
    config = config or ReplConfig.load_from_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Initializing evaluation pipeline...")
        app.state.pipeline = create_pipeline(config, store)
        logger.info(f"Evaluation pipeline ready (store backend: {config.store_backend})")

        yield

        logger.info("Shutting down worker...")
        app.state.pipeline.interpreters.clear()

    app = FastAPI(
        title="Session REPL Worker",
        description="会话连续的脚本执行服务",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.config = config

    def resolve_session(request: Request) -> str:
        """获取请求的 Session token，没有则生成新的"""
        token = request.headers.get(SESSION_HEADER) or request.cookies.get(config.cookie_name)
        return token or str(uuid.uuid4())

    # 同步接口由线程池执行，每个线程就是一个 Worker
    @app.post("/eval", response_model=EvalResponse, responses={400: {"model": ErrorResponse}})
    def evaluate(body: EvalRequest, request: Request, response: Response):
        """
        执行脚本

        同一 Session 的变量在多次调用之间保持。
        """
        pipeline: EvaluationPipeline = request.app.state.pipeline
        session_id = resolve_session(request)

        logger.info(f"Evaluating script for session {session_id}: {body.script[:100]}")
        outcome = pipeline.run(session_id, body.script)

        if isinstance(outcome, Fault):
            error = JSONResponse(
                status_code=400,
                content=ErrorResponse(session_id=session_id, **outcome.to_dict()).model_dump()
            )
            error.set_cookie(config.cookie_name, session_id, httponly=True)
            return error

        response.set_cookie(config.cookie_name, session_id, httponly=True)
        return EvalResponse(session_id=session_id, **outcome.to_dict())

    @app.delete("/session", response_model=ResetResponse)
    def reset_session(request: Request):
        """
        清空当前 Session 保存的变量
        """
        pipeline: EvaluationPipeline = request.app.state.pipeline
        session_id = resolve_session(request)

        try:
            pipeline.store.delete(session_id)
        except SessionStoreError as e:
            logger.error(f"Reset failed for session {session_id}: {e}")
            return ResetResponse(
                session_id=session_id,
                success=False,
                message=f"Reset failed: {str(e)}"
            )

        logger.info(f"Session {session_id} state reset")
        return ResetResponse(
            session_id=session_id,
            success=True,
            message="Session state reset successfully"
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """健康检查"""
        pipeline: Optional[EvaluationPipeline] = getattr(request.app.state, "pipeline", None)
        if pipeline is None:
            return HealthResponse(status="unhealthy", interpreters=0)
        return HealthResponse(status="healthy", interpreters=len(pipeline.interpreters))

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "service": "Session REPL Worker",
            "version": "1.0.0",
            "endpoints": {
                "evaluate": "POST /eval",
                "reset": "DELETE /session",
                "health": "GET /health"
            }
        }

    return app


def main():
    """命令行入口"""
    import uvicorn

    config = ReplConfig.load_from_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    main()
