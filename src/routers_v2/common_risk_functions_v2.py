# Risk Assessment V2 - Fixed rule table evaluated against a snapshot of the collected permission data
# Every rule is a pure function of the snapshot and yields at most one finding

import math
from dataclasses import asdict, dataclass, field
from typing import Callable, Literal, Optional, Union

from routers_v2.common_analyzer_models_v2 import EDIT_OR_HIGHER_ROLES, AnalyzerDataStore, DataSnapshot, get_email_domain, is_external_login

Severity = Literal["Critical", "High", "Medium", "Low"]
RiskLevel = Literal["Critical", "High", "Medium", "Low", "None"]

MAX_EXTERNAL_DOMAINS = 5
MAX_COMPANY_WIDE_LINKS = 10
MAX_FULL_CONTROL_ASSIGNMENTS = 5
MAX_DIRECT_USER_ASSIGNMENTS = 10
INHERITANCE_BREAK_HIGH_RATIO = 0.5
INHERITANCE_BREAK_MEDIUM_RATIO = 0.25
TOP_FINDINGS_FOR_SCORE = 5

@dataclass
class RiskFinding:
  rule_id: str
  category: str
  title: str
  severity: Severity
  score: int
  description: str
  affected: list[str] = field(default_factory=list)

@dataclass
class RiskAssessment:
  overall_score: int
  risk_level: RiskLevel
  critical_count: int
  high_count: int
  medium_count: int
  low_count: int
  total_findings: int
  findings: list[RiskFinding] = field(default_factory=list)

  def to_dict(self) -> dict:
    return asdict(self)

def get_risk_level(score: int) -> RiskLevel:
  if score >= 80: return "Critical"
  if score >= 60: return "High"
  if score >= 30: return "Medium"
  if score > 0: return "Low"
  return "None"

def _distinct(values) -> list[str]:
  result = []
  for value in values:
    if value not in result: result.append(value)
  return result


# ----------------------------------------- START: Rules ----------------------------------------------------------------------

def check_external_edit_access(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  affected = [u.name for u in snapshot.users if u.is_external and u.permission in EDIT_OR_HIGHER_ROLES]
  affected += [r.principal for r in snapshot.role_assignments if r.role in EDIT_OR_HIGHER_ROLES and is_external_login(r.login_name)]
  affected = _distinct(affected)
  if not affected: return None
  return RiskFinding("EXT-001", "External Access", "External users with edit access", "High", 70,
    f"{len(affected)} external user(s) hold Edit, Contribute or Full Control permissions.", affected)

def check_external_site_admins(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  affected = _distinct(u.name for u in snapshot.users if u.is_external and u.is_site_admin)
  if not affected: return None
  return RiskFinding("EXT-002", "External Access", "External site administrators", "Critical", 90,
    f"{len(affected)} external user(s) are site collection administrators.", affected)

def check_external_domain_spread(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  domains = _distinct(get_email_domain(u.email) for u in snapshot.users if u.is_external)
  domains = [d for d in domains if d != "Unknown"]
  if len(domains) <= MAX_EXTERNAL_DOMAINS: return None
  return RiskFinding("EXT-003", "External Access", "External users from many domains", "Medium", 40,
    f"External users come from {len(domains)} distinct domains (threshold {MAX_EXTERNAL_DOMAINS}).", domains)

def check_disabled_external_accounts(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  affected = _distinct(u.name for u in snapshot.users if u.is_external and u.graph_enriched and u.graph_account_enabled is False)
  if not affected: return None
  return RiskFinding("EXT-004", "External Access", "Disabled external accounts with access", "High", 65,
    f"{len(affected)} disabled external account(s) still appear in site permissions.", affected)

def check_stale_external_accounts(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  affected = _distinct(u.name for u in snapshot.users if u.is_external and u.graph_enriched and u.graph_is_stale)
  if not affected: return None
  return RiskFinding("EXT-005", "External Access", "Stale external accounts", "Medium", 35,
    f"{len(affected)} external account(s) have not signed in recently.", affected)

def check_anonymous_links(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  anonymous = [l for l in snapshot.sharing_links if l.link_type == "Anonymous"]
  if not anonymous: return None
  affected = _distinct(l.item_url or l.site_url for l in anonymous)
  edit_links = [l for l in anonymous if l.access_level == "Edit"]
  if edit_links:
    return RiskFinding("SHR-001", "Sharing", "Anonymous edit links", "Critical", 95,
      f"{len(anonymous)} anonymous link(s) found, {len(edit_links)} granting edit access.", affected)
  return RiskFinding("SHR-001", "Sharing", "Anonymous sharing links", "High", 75,
    f"{len(anonymous)} anonymous link(s) grant access without sign-in.", affected)

def check_company_wide_links(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  links = [l for l in snapshot.sharing_links if l.link_type == "Company-wide"]
  if len(links) <= MAX_COMPANY_WIDE_LINKS: return None
  return RiskFinding("SHR-002", "Sharing", "Many company-wide links", "Medium", 35,
    f"{len(links)} company-wide links found (threshold {MAX_COMPANY_WIDE_LINKS}).", _distinct(l.item_url or l.site_url for l in links))

def check_full_control_assignments(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  assignments = [r for r in snapshot.role_assignments if r.role == "Full Control"]
  if len(assignments) <= MAX_FULL_CONTROL_ASSIGNMENTS: return None
  return RiskFinding("PERM-001", "Permissions", "Excessive Full Control assignments", "High", 65,
    f"{len(assignments)} Full Control assignments found (threshold {MAX_FULL_CONTROL_ASSIGNMENTS}).", _distinct(r.principal for r in assignments))

def check_direct_user_assignments(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  assignments = [r for r in snapshot.role_assignments if r.principal_type == "User"]
  if len(assignments) <= MAX_DIRECT_USER_ASSIGNMENTS: return None
  return RiskFinding("PERM-002", "Permissions", "Many direct user assignments", "Medium", 45,
    f"{len(assignments)} permissions are granted directly to users instead of groups (threshold {MAX_DIRECT_USER_ASSIGNMENTS}).", _distinct(r.principal for r in assignments))

def check_inheritance_breaks(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  total = len(snapshot.inheritance_items)
  if total == 0: return None
  broken = [i for i in snapshot.inheritance_items if i.has_unique_permissions]
  ratio = len(broken) / total
  percent = round(ratio * 100)
  affected = [i.url for i in broken]
  if ratio > INHERITANCE_BREAK_HIGH_RATIO:
    return RiskFinding("INH-001", "Inheritance", "Widespread broken inheritance", "High", 60, f"{percent}% of scanned containers ({len(broken)} of {total}) have unique permissions.", affected)
  if ratio > INHERITANCE_BREAK_MEDIUM_RATIO:
    return RiskFinding("INH-001", "Inheritance", "Frequent broken inheritance", "Medium", 40, f"{percent}% of scanned containers ({len(broken)} of {total}) have unique permissions.", affected)
  return None

def check_empty_groups(snapshot: DataSnapshot) -> Optional[RiskFinding]:
  affected = _distinct(g.name for g in snapshot.groups if g.member_count == 0)
  if not affected: return None
  return RiskFinding("GRP-001", "Groups", "Empty groups", "Low", 15,
    f"{len(affected)} group(s) have no members.", affected)

RISK_RULES: list[Callable[[DataSnapshot], Optional[RiskFinding]]] = [
  check_external_edit_access,
  check_external_site_admins,
  check_external_domain_spread,
  check_disabled_external_accounts,
  check_stale_external_accounts,
  check_anonymous_links,
  check_company_wide_links,
  check_full_control_assignments,
  check_direct_user_assignments,
  check_inheritance_breaks,
  check_empty_groups
]

# ----------------------------------------- END: Rules ------------------------------------------------------------------------


# ----------------------------------------- START: Assessment -----------------------------------------------------------------

def assess(data: Union[AnalyzerDataStore, DataSnapshot], rules: Optional[list] = None) -> RiskAssessment:
  """
  Evaluate every rule against a snapshot of the store.
  Findings are ordered by score (highest first, rule order on ties); the overall score is
  the rounded average of the top 5 finding scores, capped at 100.
  """
  snapshot = data.snapshot() if isinstance(data, AnalyzerDataStore) else data
  findings = []
  for rule in (rules if rules is not None else RISK_RULES):
    finding = rule(snapshot)
    if finding: findings.append(finding)
  findings = sorted(findings, key=lambda f: -f.score)

  top_scores = [f.score for f in findings[:TOP_FINDINGS_FOR_SCORE]]
  overall_score = min(100, int(math.floor(sum(top_scores) / len(top_scores) + 0.5))) if top_scores else 0

  return RiskAssessment(
    overall_score=overall_score,
    risk_level=get_risk_level(overall_score),
    critical_count=sum(1 for f in findings if f.severity == "Critical"),
    high_count=sum(1 for f in findings if f.severity == "High"),
    medium_count=sum(1 for f in findings if f.severity == "Medium"),
    low_count=sum(1 for f in findings if f.severity == "Low"),
    total_findings=len(findings),
    findings=findings
  )

# ----------------------------------------- END: Assessment -------------------------------------------------------------------
