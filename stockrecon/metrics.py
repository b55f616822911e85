# stockrecon/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

try:
    # multiprocess 支持（需在进程启动前设置好 PROMETHEUS_MULTIPROC_DIR）
    from prometheus_client import REGISTRY, CollectorRegistry, multiprocess

    _HAVE_MP = True
except ImportError:
    from prometheus_client import REGISTRY

    _HAVE_MP = False

# 扫码：outcome = applied / duplicate / unresolved / rejected
SCANS = Counter("recon_scans_total", "Scans processed by the ingestion queue", ["outcome"])
# 提交：workflow = receive / count，outcome = ok / partial / aborted
COMMITS = Counter("recon_commits_total", "Reconciliation commits", ["workflow", "outcome"])
# 主路径能力不支持、走备路径的次数
FALLBACKS = Counter("recon_mutation_fallbacks_total", "Fallback mutations used", ["mutation"])
# 非致命的提交副作用失败：kind = note / change_log / audit / group_record
SIDE_EFFECT_FAILURES = Counter(
    "recon_side_effect_failures_total", "Non-fatal post-commit side-effect failures", ["kind"]
)
COMMIT_LAT = Histogram("recon_commit_seconds", "Commit latency (seconds)", ["workflow"])

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程直接导出默认 REGISTRY；
    多进程模式下用 MultiProcessCollector 合并各分片。
    """
    if _HAVE_MP and os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
