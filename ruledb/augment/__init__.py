"""
Augmentation module for RuleDB.

Cross-schema composition of field selection and referenced child
requirements for create/view/edit, with two-layer validation.
"""

from .composer import AugmentationComposer, CombinedContract, PayloadNode

__all__ = ["AugmentationComposer", "CombinedContract", "PayloadNode"]
