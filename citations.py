import re
from dataclasses import dataclass
from typing import Dict, List, Union

CITATION_PATTERN = re.compile(r"\(Quelle: ([^,]+), Seite (\d+)\)")


@dataclass(frozen=True)
class Citation:
    document: str
    page: int

    def to_dict(self) -> Dict[str, Union[str, int]]:
        return {"document": self.document, "page": self.page}


def extract_citations(text: str) -> List[Citation]:
    """Collect unique (document, page) citations in order of first appearance."""
    citations: List[Citation] = []
    seen = set()
    for match in CITATION_PATTERN.finditer(text or ""):
        citation = Citation(document=match.group(1).strip(), page=int(match.group(2)))
        if citation in seen:
            continue
        seen.add(citation)
        citations.append(citation)
    return citations
