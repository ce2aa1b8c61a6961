#!/usr/bin/env python
# Computes keystroke savings of typing a set of phrases assuming optimal use of the suggestions.
# At every keystroke the text typed so far is sent to the model, selecting a suggestion that
# completes the current word costs one keystroke and skips to the end of that word.

from timeit import default_timer as timer
from argparse import ArgumentParser
from datetime import datetime
from socket import gethostname
from sys import exit, stderr, stdout
from fcntl import flock, LOCK_UN, LOCK_EX
from os import path
from typing import List, Optional
import numpy as np
from scipy.stats import bootstrap
import eval_helper
from nextwordpredict.exceptions import ContextOverflowException


def complete_word(word_prefix: str, suggestion: str) -> Optional[str]:
    """
    The word a suggestion would produce when selected after the typed prefix of a word.
    :param word_prefix: letters of the current word typed so far, "" at the start of a word
    :param suggestion: suggested text fragment, a leading space starts a new word
    :return: completed word, or None if the suggestion does not continue this word
    """
    word = suggestion.strip()
    if not word or " " in word:
        return None
    if suggestion[0].isspace():
        # Starts a new word, only sensible when nothing of the current word is typed
        return word if not word_prefix else None
    return word_prefix + word


def target_word_at(phrase: str, index: int) -> str:
    """
    The word being typed at a character position, the following word if we are at a space
    :param phrase: full phrase
    :param index: position of the next character to type
    :return: target word
    """
    if phrase[index] == " ":
        index += 1
    start = phrase.rfind(" ", 0, index) + 1
    end = phrase.find(" ", index)
    if end == -1:
        end = len(phrase)
    return phrase[start:end]


def simulate_phrase(lm, phrase: str, nbest: int, temperature: float, verbose: int = 0) -> int:
    """
    Type a phrase using suggestions wherever they help.
    :return: number of keystrokes used
    """
    keystrokes = 0
    index = 0
    word_prefix = ""
    while index < len(phrase):
        target_word = target_word_at(phrase, index)
        context = phrase[:index]
        # At a space the word prefix is what follows it, which is nothing yet
        prefix = "" if phrase[index] == " " else word_prefix

        words = lm.predict_next_words(context, top_k=nbest, temperature=temperature)
        completed = [complete_word(prefix, w) for w in words]
        if verbose:
            print(f" context '{context}', prefix '{prefix}', suggestions {words}, target '{target_word}'")

        keystrokes += 1
        if target_word in completed:
            if verbose:
                print(f" SELECTED: {target_word}")
            # Jump to the end of the target word
            end = phrase.find(" ", index + 1)
            index = len(phrase) if end == -1 else end
            word_prefix = ""
        else:
            if phrase[index] == " ":
                word_prefix = ""
            else:
                word_prefix += phrase[index]
            index += 1
    return keystrokes


if __name__ == "__main__":

    parser = ArgumentParser()
    eval_helper.add_args(parser)
    parser.add_argument("--phrases", type=str, help="Input text file with phrases")
    parser.add_argument("--phrase-limit", type=int, help="Max phrases to evaluate")
    parser.add_argument("--dataset", type=str, help="Hugging Face dataset to load phrases from")
    parser.add_argument("--dataset-split", type=str, default="test", help="Split to use from the Hugging Face dataset")
    parser.add_argument("--dataset-phrase-col", type=str, default="text", help="Dataset column containing phrases")
    parser.add_argument("--lower", action="store_true", help="Lowercase the phrases")
    parser.add_argument("--strip-symbols", action="store_true", help="Strip symbols from phrases except apostrophe")
    parser.add_argument("--bootstrap-samples", type=int, default=9999, help="Number of samples to use for bootstrap estimates")
    parser.add_argument("--bootstrap-method", default="BCa", help="Method to use for bootstrap, BCa | basic | percentile")
    parser.add_argument("--out-stats", help="Output summary stats to this tab delimited file")
    parser.add_argument("--out-extra", action="append", dest="out_extra_cols", help="Output additional column to stats file, format: COLUMN_NAME,VALUE")
    args = parser.parse_args()

    if not args.phrases and not args.dataset:
        print(f"ERROR: Must specify either --phrases or --dataset!", file = stderr)
        exit(1)
    if args.phrases and args.dataset:
        print(f"ERROR: Can't specify both --phrases and --dataset!", file = stderr)
        exit(1)
    if args.out_extra_cols:
        for extra in args.out_extra_cols:
            if len(extra.split(",")) != 2:
                print(f"ERROR: Invalid comma separated pair in --out-extra: {extra}!", file = stderr)
                exit(1)
    eval_helper.check_args_for_errors(args)
    eval_helper.check_args_for_warnings(args)

    eval_helper.print_startup_info(args)
    eval_helper.set_cpu_cores(args)
    device = eval_helper.get_device(args)
    phrases = eval_helper.load_phrases(args)
    eval_helper.prep_prompt_template(args)
    stdout.flush()

    start = timer()
    lm = eval_helper.load_language_model(args=args, device=device)

    total_chars = 0
    total_keystrokes = 0
    skipped = 0
    phrase_ks: List[float] = []
    prediction_start = timer()

    for phrase_index, phrase in enumerate(phrases):
        phrase_start = timer()
        print(f"*** Phrase {phrase_index + 1}: {phrase}")
        try:
            keystrokes = simulate_phrase(lm, phrase, args.nbest, args.temperature, args.verbose)
        except ContextOverflowException as e:
            print(f"WARNING: skipping phrase, {e.message}", file = stderr)
            skipped += 1
            continue

        total_chars += len(phrase)
        total_keystrokes += keystrokes
        ks = (len(phrase) - keystrokes) / len(phrase) * 100.0
        phrase_ks.append(ks)
        print(f"KS: {ks:.2f} keys {keystrokes} len {len(phrase)} secs {timer() - phrase_start:.2f}")
        stdout.flush()

    if total_chars == 0:
        print(f"ERROR: No phrases were evaluated!", file = stderr)
        exit(1)

    print()
    final_ks = (total_chars - total_keystrokes) / total_chars * 100.0
    total_time = timer() - start
    secs_per_phrase = (timer() - prediction_start) / len(phrase_ks)

    ci_low, ci_high = float("nan"), float("nan")
    if len(phrase_ks) > 1:
        result = bootstrap(data=(np.array(phrase_ks),),
                           statistic=np.mean,
                           n_resamples=args.bootstrap_samples,
                           method=args.bootstrap_method)
        ci_low = result.confidence_interval.low
        ci_high = result.confidence_interval.high

    print(f"SKIPPED: {skipped}")
    print(f"CHARS, KEYSTROKES, PHRASES: {total_chars} {total_keystrokes} {len(phrase_ks)}")
    print(f"TIME: {total_time:.2f}")
    print(f"SECS/PHRASE: {secs_per_phrase:.4f}")
    print(f"FINAL KS: {final_ks:.4f}")
    print(f"PHRASE KS 95% CI: {ci_low:.4f} {ci_high:.4f}")
    if args.verbose:
        lm.dump_predict_times()

    # Optional output of a tab-delimited file for easy tracking of results over multiple experiments
    if args.out_stats:
        if not path.exists(args.out_stats):
            # New file, write a header line
            file = open(args.out_stats, "w")
            # We may run this script in parallel so try and prevent writing to the stats file at the same time
            flock(file, LOCK_EX)
            file.write(f"final_ks"
                       f"\tci_low"
                       f"\tci_high"
                       f"\tphrases"
                       f"\ttotal_words"
                       f"\ttotal_chars"
                       f"\ttotal_keystrokes"
                       f"\ttotal_time"
                       f"\tdate_time"
                       f"\thostname"
                       )
            # Write any of the optional column names the client intends to log
            if args.out_extra_cols:
                for extra in args.out_extra_cols:
                    file.write(f"\t{extra.split(',')[0]}")
            file.write("\n")
        else:
            file = open(args.out_stats, "a")
            flock(file, LOCK_EX)

        file.write(f"{final_ks:.6f}"
                   f"\t{ci_low:.6f}"
                   f"\t{ci_high:.6f}"
                   f"\t{len(phrase_ks)}"
                   f"\t{eval_helper.count_words(phrases)}"
                   f"\t{total_chars}"
                   f"\t{total_keystrokes}"
                   f"\t{total_time:.2f}"
                   f"\t{datetime.now()}"
                   f"\t{gethostname()}"
                   )
        if args.out_extra_cols:
            for extra in args.out_extra_cols:
                file.write(f"\t{extra.split(',')[1]}")
        file.write("\n")
        flock(file, LOCK_UN)
        file.close()

    lm.close()
