"""
Route catalog: Taiwan cycling routes tracked for questionnaire rewards.

 1 main-loop          (Cycling Route No. 1, limit 70)
14 loop-branch        (Route 1-x branch routes, limit 35 each)
 3 loop-alternative   (Route 1 alternative sections, limit 35 each)
15 diverse            (themed diverse routes, limit 40 each)

Limits come from CATEGORY_COMPLETION_LIMITS; set "completion_limit" on an
entry to override one route.
"""

# ═════════════════════════════════════════════════════════════════════════════
# ROUND-ISLAND MAIN LOOP
# ═════════════════════════════════════════════════════════════════════════════

MAIN_LOOP = [
    {"route_id": "route-1", "name": "Cycling Route No. 1", "category": "main-loop"},
]

# ═════════════════════════════════════════════════════════════════════════════
# ROUND-ISLAND BRANCH ROUTES
# ═════════════════════════════════════════════════════════════════════════════

LOOP_BRANCH = [
    {"route_id": f"route-1-{n}", "name": f"Cycling Route No. 1-{n}", "category": "loop-branch"}
    for n in (1, 2, 3, 4, 5, 6, 7, 10, 11, 13, 15, 18, 19, 20)
]

# ═════════════════════════════════════════════════════════════════════════════
# ROUND-ISLAND ALTERNATIVE ROUTES
# ═════════════════════════════════════════════════════════════════════════════

LOOP_ALTERNATIVE = [
    {"route_id": "route-1-replace-t-l", "name": "Route 1 Alternative (Tucheng-Longtan)",
     "category": "loop-alternative"},
    {"route_id": "route-1-replace-s-q", "name": "Route 1 Alternative (Songshan-Qidu)",
     "category": "loop-alternative"},
    {"route_id": "route-1-2-replace-g-g", "name": "Route 1-2 Alternative (Gaoyuan-Guanxi)",
     "category": "loop-alternative"},
]

# ═════════════════════════════════════════════════════════════════════════════
# DIVERSE ROUTES
# ═════════════════════════════════════════════════════════════════════════════

DIVERSE = [
    {"route_id": "route-chiayi-sugarrail", "name": "Chiayi Sugar Railway & Sunset Salt Fields",
     "category": "diverse"},
    {"route_id": "route-dapengbay", "name": "Dapeng Bay", "category": "diverse"},
    {"route_id": "route-gamalan", "name": "Kavalan", "category": "diverse"},
    {"route_id": "route-guashan-triathlon", "name": "Guashan Triathlon", "category": "diverse"},
    {"route_id": "route-hot-spring", "name": "Hot Springs, Tectonic Rides & Forest Trails",
     "category": "diverse"},
    {"route_id": "route-huangginsanhai", "name": "Golden Mountains & Sea", "category": "diverse"},
    {"route_id": "route-huilan-wave", "name": "Hualien Waves", "category": "diverse"},
    {"route_id": "route-indigenous", "name": "Indigenous Villages, Rice Waves & Mountain Waters",
     "category": "diverse"},
    {"route_id": "route-jhudao", "name": "Penghu Islands", "category": "diverse"},
    {"route_id": "route-kaohsiung-hill", "name": "Kaohsiung Hill Towns", "category": "diverse"},
    {"route_id": "route-lingbo-guantian", "name": "Guantian Water Caltrops", "category": "diverse"},
    {"route_id": "route-madaochenggong", "name": "Chenggong Harbour", "category": "diverse"},
    {"route_id": "route-shitou", "name": "Lion's Head Mountain", "category": "diverse"},
    {"route_id": "route-sunmoonlake", "name": "Sun Moon Lake", "category": "diverse"},
    {"route_id": "route-taijiang", "name": "Taijiang", "category": "diverse"},
]

ROUTES = MAIN_LOOP + LOOP_BRANCH + LOOP_ALTERNATIVE + DIVERSE
