"""
BudgetFlow - Source Package

Authorization and workflow engine for shared budgets and expense
reimbursement.

DESIGN PRINCIPLES:
1. One place decides who may do what (the permission resolver)
2. Fail closed: an unknown answer is an error, never a silent "allow"
3. Every decision leaves an immutable trail
4. Storage and notification transports are swappable collaborators
"""

__version__ = "1.0.0"
__author__ = "BudgetFlow Team"
