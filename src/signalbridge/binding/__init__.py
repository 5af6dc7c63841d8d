"""
Binding layer: transform expressions and the binding evaluator.
"""

from .transform import Transform, TransformError, compile_transform, truthy
from .evaluator import BindingEvaluator

__all__ = [
    'Transform',
    'TransformError',
    'compile_transform',
    'truthy',
    'BindingEvaluator',
]
