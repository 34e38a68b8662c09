import json
import logging
import sys
from pathlib import Path
from typing import List

from rfp_graphrag.config import get_settings
from rfp_graphrag.context import build_service_context
from rfp_graphrag.text_extraction import save_uploaded_file
from rfp_graphrag.workflow_engine import WorkflowEngine


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )
    logger = logging.getLogger(__name__)

    if len(sys.argv) < 2:
        print(
            "Usage: python scripts/process_rfp.py <file1> [<file2> ...] "
            "[--context 'project context JSON']"
        )
        sys.exit(1)

    # Arguments: list of RFP files plus optional project context.
    paths: List[Path] = []
    project_context = None
    args_iter = iter(sys.argv[1:])
    for arg in args_iter:
        if arg == "--context":
            try:
                project_context = json.loads(next(args_iter))
            except StopIteration:
                print("ERROR: --context flag provided but no JSON given.")
                sys.exit(1)
            except json.JSONDecodeError as e:
                print(f"ERROR: --context is not valid JSON: {e}")
                sys.exit(1)
            break
        paths.append(Path(arg))

    if not paths:
        print("ERROR: At least one document path must be provided.")
        sys.exit(1)

    for p in paths:
        if not p.is_file():
            print(f"ERROR: File not found: {p}")
            sys.exit(1)

    settings = get_settings()
    logger.info("WORKFLOW_DB_ROOT=%s", settings.workflow_db_root)
    logger.info("VECTOR_BACKENDS=%s", ",".join(settings.vector_backends))
    logger.info("NEO4J_ENABLED=%s", settings.neo4j_enabled)

    # Workflows read their documents from the upload area.
    stored = [save_uploaded_file(p.read_bytes(), p.name, settings.upload_root) for p in paths]
    logger.info("Stored %d upload(s) under %s", len(stored), settings.upload_root)

    context = build_service_context(settings)
    engine = WorkflowEngine(context)
    try:
        outcome = engine.process_rfp([str(p) for p in stored], project_context)
        workflow_id = outcome["workflow_id"]

        summary = engine.generate_workflow_summary(workflow_id)
        print("\n=== Workflow finished ===")
        print(json.dumps(summary, indent=2, ensure_ascii=False))

        if outcome["status"] != "completed":
            print(f"\nWorkflow failed at {outcome.get('failed_step')}: {outcome.get('error')}")
            sys.exit(2)

        html = context.graph_index.build_graph_html(workflow_id)
        if html:
            out_dir = Path("data/graphs")
            out_dir.mkdir(parents=True, exist_ok=True)
            out_file = out_dir / f"graph_{workflow_id}.html"
            out_file.write_text(html, encoding="utf-8")
            print(f"\nInteractive graph HTML saved to: {out_file}")
    finally:
        context.close()


if __name__ == "__main__":
    main()
