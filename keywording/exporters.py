"""
CSV export of generated metadata in stock-site upload formats
"""
import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List

from .models import Metadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CSVTemplate:
    """Column layout of one stock site's bulk-upload CSV"""
    name: str
    headers: List[str]
    format_row: Callable[[Metadata], Dict[str, str]]


ADOBE_STOCK = CSVTemplate(
    name="AdobeStock",
    headers=["Filename", "Title", "Keywords", "Category", "Description"],
    format_row=lambda m: {
        'Filename': m.display_name,
        'Title': m.title,
        'Keywords': ';'.join(m.keywords),
        'Category': m.category,
        'Description': m.description,
    },
)

FREEPIK = CSVTemplate(
    name="Freepik",
    headers=["file_name", "title", "tags", "description", "main_category"],
    format_row=lambda m: {
        'file_name': m.display_name,
        'title': m.title,
        'tags': ','.join(m.keywords),
        'description': m.description,
        'main_category': m.category,
    },
)

TEMPLATES: Dict[str, CSVTemplate] = {t.name: t for t in (ADOBE_STOCK, FREEPIK)}


def get_template(name: str) -> CSVTemplate:
    template = TEMPLATES.get(name)
    if template is None:
        raise ValueError(
            f"Template {name} not found. Supported: {list(TEMPLATES)}")
    return template


def export_to_csv(metadata: Iterable[Metadata], template_name: str = "AdobeStock") -> str:
    """Render metadata rows with every cell quoted"""
    template = get_template(template_name)

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(template.headers)

    count = 0
    for item in metadata:
        row = template.format_row(item)
        writer.writerow([row.get(header, '') for header in template.headers])
        count += 1

    logger.info(f"Exported {count} rows with {template.name} template")
    return buffer.getvalue()


def generate_filename(template_name: str) -> str:
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return f"{template_name.lower()}_metadata_{timestamp}.csv"
