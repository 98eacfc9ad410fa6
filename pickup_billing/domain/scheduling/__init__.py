"""
Seasonal billing-phase scheduling

Month arithmetic, seasonal windows, the timeline builder, phase emission,
the compact rule codec and the schedule reconciler. Import the submodules
directly.
"""
