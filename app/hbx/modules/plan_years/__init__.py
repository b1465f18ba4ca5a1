"""
Plan years (SHOP employer benefit applications).

Layers:
- states / snapshot / timetable / rules / workflow: the rules engine. Pure
  functions over PlanYearSnapshot; today and market settings are arguments.
- models / service / admin: persistence adapter and /admin/plan-years routes.
  The service builds snapshots from rows, fires events through the engine and
  carries out the effects the engine returns.
"""
