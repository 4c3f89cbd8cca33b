"""Built-in UNSPSC keyword table and a deterministic search over it."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_TOKEN_RE = re.compile(r"[a-z0-9]+")

MIN_SCORE = 0.1


@dataclass(frozen=True)
class TaxonomyCode:
    code: str
    title: str
    segment: str
    family: str
    keywords: tuple[str, ...]
    description: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "title": self.title,
            "segment": self.segment,
            "family": self.family,
        }


def _c(code: str, title: str, segment: str, family: str, keywords: str, description: str = "") -> TaxonomyCode:
    return TaxonomyCode(
        code=code,
        title=title,
        segment=segment,
        family=family,
        keywords=tuple(k.strip() for k in keywords.split(",") if k.strip()),
        description=description,
    )


TAXONOMY: tuple[TaxonomyCode, ...] = (
    # 43 Information Technology
    _c("43211503", "Notebook computers", "Information Technology", "Computer Equipment", "laptop,notebook,portable,macbook,thinkpad"),
    _c("43211507", "Desktop computers", "Information Technology", "Computer Equipment", "desktop,pc,workstation,tower"),
    _c("43211509", "Tablet computers", "Information Technology", "Computer Equipment", "tablet,ipad,surface"),
    _c("43211501", "Computer servers", "Information Technology", "Computer Equipment", "server,datacenter,rack,blade"),
    _c("43211902", "Computer monitors", "Information Technology", "Computer Equipment", "monitor,display,screen"),
    _c("43212105", "Computer printers", "Information Technology", "Computer Equipment", "printer,printing,mfp,toner"),
    _c("43222609", "Network routers", "Information Technology", "Network Equipment", "router,routing,switch,ethernet,network"),
    _c("43222501", "Network firewalls", "Information Technology", "Network Equipment", "firewall,vpn,network security"),
    _c("43231500", "Business function software", "Information Technology", "Software", "software,application,saas,license,subscription"),
    _c("43231501", "Enterprise resource planning software", "Information Technology", "Software", "erp,sap,oracle"),
    _c("43231503", "Customer relationship management software", "Information Technology", "Software", "crm,salesforce,hubspot"),
    _c("43233204", "Security software", "Information Technology", "Software", "antivirus,malware,endpoint,security software"),
    _c("81112003", "Cloud computing services", "Information Technology", "Computer Services", "cloud,aws,azure,hosting,iaas,compute"),
    # 44 Office Equipment and Supplies
    _c("44111515", "Office supplies", "Office Equipment", "Office Supplies", "pen,pencil,stapler,folder,binder,supplies"),
    _c("14111507", "Printer and copier paper", "Office Equipment", "Paper Products", "paper,copy paper,ream"),
    _c("44101501", "Photocopiers", "Office Equipment", "Office Machines", "copier,photocopier,xerox"),
    # 56 Furniture
    _c("56101504", "Office chairs", "Furniture", "Office Furniture", "chair,seating,ergonomic"),
    _c("56101703", "Office desks", "Furniture", "Office Furniture", "desk,standing desk,table,cubicle"),
    # 72 Building and Facilities
    _c("72101500", "Building construction services", "Building and Construction", "Construction Services", "construction,renovation,contractor"),
    _c("72102300", "HVAC system services", "Building and Construction", "Construction Services", "hvac,heating,cooling,air conditioning"),
    _c("76111500", "Building cleaning services", "Facilities", "Cleaning Services", "cleaning,janitorial,custodial"),
    _c("76121500", "Refuse disposal services", "Facilities", "Cleaning Services", "waste,trash,recycling,disposal"),
    # 78 Transportation
    _c("78101800", "Courier services", "Transportation", "Freight Transport", "courier,express,delivery,fedex,ups,dhl,shipping"),
    _c("78111502", "Commercial airline travel", "Transportation", "Passenger Transport", "airline,flight,air travel,airfare"),
    _c("78111808", "Car rental services", "Transportation", "Passenger Transport", "car rental,hertz,avis,vehicle rental"),
    _c("78111800", "Ground transportation", "Transportation", "Passenger Transport", "taxi,uber,lyft,car service,rideshare"),
    # 80 Management Services
    _c("80101500", "Business consulting services", "Management Services", "Management Consulting", "consulting,advisory,strategy,mckinsey,deloitte,accenture"),
    _c("80111600", "Temporary personnel services", "Management Services", "Human Resources Services", "temporary,temp,staffing,contractor"),
    _c("80111501", "Recruitment services", "Management Services", "Human Resources Services", "recruiting,hiring,talent,headhunter"),
    _c("80121500", "Legal services", "Management Services", "Legal Services", "legal,attorney,lawyer,law firm,counsel"),
    _c("80141600", "Marketing services", "Management Services", "Marketing", "marketing,advertising,campaign,agency"),
    # 81 Engineering and IT services
    _c("81111500", "Software engineering services", "Engineering Services", "Computer Services", "development,engineering,implementation,integration"),
    _c("81112200", "Software maintenance and support", "Engineering Services", "Computer Services", "maintenance,support,renewal"),
    # 83 Utilities and telecom
    _c("83101800", "Electric utilities", "Utilities", "Utility Services", "electric,electricity,power,energy"),
    _c("83111603", "Mobile telephone services", "Utilities", "Telecommunications", "mobile,cellular,wireless,verizon,t-mobile,phone"),
    _c("83111802", "Internet services", "Utilities", "Telecommunications", "internet,broadband,isp,connectivity"),
    # 84 Financial
    _c("84111600", "Audit services", "Financial Services", "Accounting", "audit,auditing,assurance"),
    _c("84111500", "Accounting services", "Financial Services", "Accounting", "accounting,bookkeeping,tax"),
    _c("84131500", "Insurance services", "Financial Services", "Insurance", "insurance,coverage,policy,premium"),
    # 86 / 90
    _c("86101700", "Vocational training services", "Education Services", "Training", "training,course,workshop,certification,learning"),
    _c("90111500", "Hotel accommodation", "Travel and Hospitality", "Lodging", "hotel,lodging,accommodation,marriott,hilton"),
    _c("90101500", "Catering services", "Travel and Hospitality", "Food Services", "catering,meals,restaurant,food"),
)

_BY_CODE: dict[str, TaxonomyCode] = {entry.code: entry for entry in TAXONOMY}


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall((text or "").lower())


def score_entry(query: str, entry: TaxonomyCode) -> float:
    query_lower = (query or "").lower()
    words = [w for w in _tokens(query) if len(w) > 1]
    title_tokens = set(_tokens(entry.title))
    family_tokens = set(_tokens(entry.family))
    description_tokens = set(_tokens(entry.description))

    score = 0.0
    for word in words:
        if word in title_tokens:
            score += 0.15
        if word in family_tokens:
            score += 0.05
        if len(word) > 2 and word in description_tokens:
            score += 0.05
    for keyword in entry.keywords:
        if keyword in query_lower:
            score += 0.12
        keyword_tokens = set(_tokens(keyword))
        if any(w in keyword_tokens for w in words):
            score += 0.08
    return min(score, 1.0)


def search(query: str, limit: int = 5) -> list[dict[str, Any]]:
    """Return up to ``limit`` codes ranked by overlap with ``query``."""
    scored = []
    for entry in TAXONOMY:
        score = score_entry(query, entry)
        if score > MIN_SCORE:
            scored.append((score, entry))
    scored.sort(key=lambda pair: (-pair[0], pair[1].code))
    return [{**entry.as_dict(), "score": round(score, 4)} for score, entry in scored[: max(0, int(limit))]]


def get_code(code: str) -> TaxonomyCode | None:
    return _BY_CODE.get(str(code).strip())


def taxonomy_stats() -> dict[str, Any]:
    return {
        "total_codes": len(TAXONOMY),
        "segments": sorted({entry.segment for entry in TAXONOMY}),
        "families": sorted({entry.family for entry in TAXONOMY}),
    }
