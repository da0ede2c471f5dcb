import logging
import sys

from pydantic_settings import CliApp

from visiview_stitcher.layout_preview import save_preview
from visiview_stitcher.parameters import StitchingParameters
from visiview_stitcher.stitcher import Stitcher


def main(args: list[str]) -> None:
    params = CliApp.run(StitchingParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)
    # fsspec debug logs are very spammy
    logging.getLogger("fsspec.local").setLevel(logging.INFO)

    stitcher = Stitcher(params)
    stitcher.load_dataset()
    if params.layout_preview is not None:
        save_preview(stitcher.preview, params.layout_preview)
    result = stitcher.run()
    for path in stitcher.save(result):
        logging.info(f"Wrote {path}")


if __name__ == "__main__":
    main(sys.argv[1:])
