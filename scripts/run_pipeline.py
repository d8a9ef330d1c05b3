"""
Run lab report files through readers -> preprocessor -> extractor locally.

Usage: python scripts/run_pipeline.py report.pdf [more files...]

Results are written as JSON to ``pipeline_results/<file name>.json``.
"""

import os
import sys
import json
import mimetypes
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.core.config import get_settings
from workers.ingestion.biomarker_extractor import BiomarkerExtractor
from workers.ingestion.ocr import build_ocr_engine
from workers.ingestion.readers import get_reader, sniff_mimetype
from workers.ingestion.text_preprocessor import LabTextPreprocessor, PreprocessorConfig
from workers.ingestion.vocabulary import get_vocabulary

OUTPUT_DIR = "pipeline_results"


def run_file(file_path, preprocessor=None, extractor=None, ocr_engine=None):
    settings = get_settings()
    data = Path(file_path).read_bytes()
    mimetype = sniff_mimetype(data) or mimetypes.guess_type(str(file_path))[0]

    reader = get_reader(
        mimetype,
        ocr_engine=ocr_engine,
        scanned_page_min_chars=settings.ocr.scanned_page_min_chars,
        render_resolution=settings.ocr.render_resolution,
    )
    raw = reader.extract_raw_text(data)

    preprocessor = preprocessor or LabTextPreprocessor(PreprocessorConfig.from_settings(settings))
    preprocessed = preprocessor.preprocess(
        raw.text, raw.original_format, ocr_engine=raw.ocr_engine, confidence=raw.ocr_confidence
    )

    extractor = extractor or BiomarkerExtractor(get_vocabulary())
    outcome = extractor.extract(preprocessed.normalized_text)

    return {
        "file": str(file_path),
        "mimetype": mimetype,
        "pages": raw.page_count,
        "scanned_pages": raw.scanned_pages,
        "preprocessedText": preprocessed.to_dict(),
        "biomarkers": outcome.to_dict(),
    }


def save_result(name, data):
    os.makedirs(OUTPUT_DIR, exist_ok=True)
    file_path = os.path.join(OUTPUT_DIR, f"{name}.json")
    with open(file_path, "w") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return file_path


def main(paths):
    if not paths:
        print(__doc__)
        return 1

    ocr_engine = build_ocr_engine(get_settings())
    failures = 0

    for path in paths:
        try:
            result = run_file(path, ocr_engine=ocr_engine)
        except Exception as e:
            print(f"Failed to process {path}: {e}")
            failures += 1
            continue

        biomarkers = result["biomarkers"]
        print(
            f"{path}: {len(biomarkers['biomarkers'])} biomarkers, "
            f"{len(biomarkers['parsingErrors'])} parsing errors"
        )
        for record in biomarkers["biomarkers"]:
            print(f"  {record['name']}: {record['value']} {record['unit']} {record['referenceRange'] or ''}")
        print(f"  saved to {save_result(Path(path).name, result)}")

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
