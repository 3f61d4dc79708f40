"""
PuzzleGuard Service Registry
全局服务注册表 - 确保服务实例的单例模式，保持数据持久性
"""
from typing import Dict, Any
import threading

_lock = threading.Lock()
_services: Dict[str, Any] = {}


def get_service(service_name: str, factory_func=None, *args, **kwargs):
    """
    获取服务实例（单例模式）

    Args:
        service_name: 服务名称
        factory_func: 服务工厂函数（如果服务不存在则调用）

    Returns:
        服务实例
    """
    with _lock:
        if service_name not in _services:
            if factory_func is None:
                raise ValueError(f"Service {service_name} not found and no factory provided")
            _services[service_name] = factory_func(*args, **kwargs)

        return _services[service_name]


def register_service(service_name: str, service_instance: Any):
    """注册服务实例（测试中用于注入）"""
    with _lock:
        _services[service_name] = service_instance


def clear_services():
    """清除所有服务实例（用于测试）"""
    with _lock:
        _services.clear()


# 服务名称常量
TRUST_SAFETY_SERVICE = "trust_safety_service"
