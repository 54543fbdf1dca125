"""Expense approval workflow package."""

from budgetflow.workflow.expenses import ExpenseWorkflow

__all__ = ["ExpenseWorkflow"]
