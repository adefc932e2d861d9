"""
对话服务员引擎 - FastAPI 入口
"""

import logging
import time

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from waiter_engine.app.api.schemas import ChatRequest, ConfirmActionRequest, EndSessionRequest, OrderStatusRequest
from waiter_engine.config import get_settings
from waiter_engine.infrastructure.container import get_container
from waiter_engine.infrastructure.exceptions import APIError
from waiter_engine.infrastructure.health import HealthChecker, HealthStatus, build_health_checker
from waiter_engine.infrastructure.monitoring import MonitoringMiddleware, get_metrics_collector, setup_logging
from waiter_engine.services.engine import ActionEngine

settings = get_settings()

setup_logging(
    level=getattr(logging, settings.logging.level),
    structured=settings.logging.format == "structured",
)
logger = logging.getLogger(__name__)

# ==================== 应用初始化 ====================

app = FastAPI(
    title=settings.app_name,
    description="把顾客的自由文本对话转换为可确认、可审计的订单操作",
    version=settings.app_version
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 监控中间件
app.add_middleware(MonitoringMiddleware)

_start_time = time.time()
_health_checker = None


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    return JSONResponse(status_code=exc.status_code or 500, content=exc.to_dict())


# ==================== 依赖 ====================

def get_engine() -> ActionEngine:
    """进程级引擎实例，测试通过 app.dependency_overrides 替换"""
    return get_container().get('engine')


def get_health_checker() -> HealthChecker:
    global _health_checker
    if _health_checker is None:
        _health_checker = build_health_checker(get_container(), version=settings.app_version)
    return _health_checker


# ==================== 对话 API ====================

@app.post("/api/chat")
def chat(request: ChatRequest, engine: ActionEngine = Depends(get_engine)):
    """一轮对话：返回回复，修改类动作附带待确认动作"""
    turn = engine.handle_message(
        request.restaurant_id,
        request.table_number,
        request.message,
        history=[m.model_dump() for m in request.history],
    )
    return turn.to_dict()


@app.post("/api/actions/confirm")
def confirm_action(request: ConfirmActionRequest, engine: ActionEngine = Depends(get_engine)):
    """确认或拒绝待确认动作；失败以 success=false 返回而不是 HTTP 错误"""
    result = engine.confirm_action(request.action_id, request.confirmed, request.action_data)
    return result.to_dict()


# ==================== 会话与订单 API ====================

@app.get("/api/tables/{restaurant_id}/{table_number}/session")
def get_table_session(restaurant_id: str, table_number: int, engine: ActionEngine = Depends(get_engine)):
    """桌台当前 ACTIVE 会话"""
    summary = engine.table_session(restaurant_id, table_number)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"{restaurant_id} 第 {table_number} 桌没有进行中的会话")
    return summary


@app.post("/api/sessions/{session_id}/end")
def end_session(session_id: str, request: EndSessionRequest, engine: ActionEngine = Depends(get_engine)):
    """结束会话"""
    return engine.end_session(session_id, request.status, request.notes)


@app.post("/api/sessions/cleanup")
def cleanup_sessions(engine: ActionEngine = Depends(get_engine)):
    """放弃超时无活动的会话"""
    abandoned = engine.abandon_stale()
    return {"abandoned": abandoned, "count": len(abandoned)}


@app.post("/api/orders/{order_id}/status")
def update_order_status(order_id: str, request: OrderStatusRequest, engine: ActionEngine = Depends(get_engine)):
    """后厨/员工推进订单状态"""
    order = engine.advance_status(order_id, request.status, by_staff=request.by_staff)
    return order.to_dict()


@app.get("/api/restaurants/{restaurant_id}/menu")
def get_menu(restaurant_id: str, engine: ActionEngine = Depends(get_engine)):
    """当前可点的菜单"""
    restaurant = engine.catalog.get_restaurant(restaurant_id)
    return {
        "restaurant_id": restaurant.id,
        "name": restaurant.name,
        "waiter_name": restaurant.waiter_name,
        "welcome_message": restaurant.welcome_message,
        "items": [item.to_dict() for item in restaurant.available_items()],
    }


# ==================== 状态与健康检查 ====================

@app.get("/api/status")
def get_status():
    """系统状态"""
    container = get_container()
    return {
        "status": "ok",
        "uptime_seconds": round(time.time() - _start_time, 1),
        "config": settings.to_dict(),
        "completion_available": container.get('completion').is_available(),
        "completion_breaker": container.get('completion_breaker').stats(),
        "cache": {
            "pending_actions": container.get('pending_actions').stats(),
            "conversation_memory": container.get('memory_store').stats(),
        },
    }


@app.get("/health")
async def health_check():
    """系统健康检查；degraded 仍返回 200，补全服务不可用时规则兜底可以继续服务"""
    report = await get_health_checker().check_all()
    status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=report.to_dict())


@app.get("/health/{check_name}")
async def health_check_single(check_name: str):
    """单项健康检查"""
    result = await get_health_checker().check_one(check_name)
    if result is None:
        raise HTTPException(status_code=404, detail=f"未知的检查项: {check_name}")

    status_code = 503 if result.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(
        status_code=status_code,
        content={
            "name": result.name,
            "status": result.status.value,
            "latency_ms": round(result.latency_ms, 2),
            "details": result.details,
            **({"error": result.error} if result.error else {})
        }
    )


@app.get("/api/metrics")
async def get_metrics():
    """性能与失败分类指标（最近 5 分钟）"""
    return get_metrics_collector().get_all_stats(window_seconds=300)


# ==================== 启动服务 ====================

def run(reload: bool = False):
    """运行服务器"""
    import uvicorn

    logger.info(f"{settings.app_name} 启动: http://{settings.server.host}:{settings.server.port}")
    if reload:
        uvicorn.run(
            "waiter_engine.app.main:app",
            host=settings.server.host,
            port=settings.server.port,
            reload=True
        )
    else:
        uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="对话服务员引擎")
    parser.add_argument("--reload", "-r", action="store_true", help="启用自动重载")
    args = parser.parse_args()
    run(reload=args.reload or settings.server.debug)
