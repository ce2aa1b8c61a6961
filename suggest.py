#!/usr/bin/env python
# Interactive next word suggestions.
# Each line read from standard input is the full text of the editor, suggestions are printed
# tab separated. Typing more text on the next line reuses the previous computation.

from argparse import ArgumentParser
from sys import stdin, stdout, stderr, exit
from timeit import default_timer as timer
import eval_helper
from nextwordpredict.exceptions import ContextOverflowException
from nextwordpredict.worker import SuggestionWorker

if __name__ == "__main__":

    parser = ArgumentParser()
    eval_helper.add_args(parser)
    parser.add_argument("--timeout", type=float, help="Seconds to wait for suggestions before discarding them")
    parser.add_argument("--max-context-len", type=int, default=2000,
                        help="Characters of text kept when the context window overflows")
    args = parser.parse_args()

    eval_helper.check_args_for_errors(args)
    eval_helper.check_args_for_warnings(args)
    eval_helper.set_cpu_cores(args)
    device = eval_helper.get_device(args)
    eval_helper.prep_prompt_template(args)

    lm = eval_helper.load_language_model(args=args, device=device)
    worker = SuggestionWorker(lm)

    # Text we actually send, may have words dropped from the front after an overflow
    trimmed = None
    for line in stdin:
        text = line.rstrip("\n")
        if trimmed is not None:
            text = eval_helper.update_context(context=text, max_len=args.max_context_len)
        start = timer()
        try:
            words = worker.suggest(text, top_k=args.nbest, temperature=args.temperature, timeout=args.timeout)
        except ContextOverflowException as e:
            print(f"WARNING: {e.message}, dropping words from the front of the text", file=stderr)
            trimmed = eval_helper.update_context(context=text, max_len=args.max_context_len // 2)
            args.max_context_len = max(1, args.max_context_len // 2)
            try:
                words = worker.suggest(trimmed, top_k=args.nbest, temperature=args.temperature, timeout=args.timeout)
            except ContextOverflowException as e:
                print(f"ERROR: {e.message}", file=stderr)
                words = []
        print("\t".join(words))
        if args.verbose:
            print(f"secs {timer() - start:.3f}", file=stderr)
        stdout.flush()

    if args.verbose:
        lm.dump_predict_times()
    worker.shutdown()
    exit(0)
