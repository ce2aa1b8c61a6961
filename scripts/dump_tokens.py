#!/usr/bin/env python
# Dumps the token text of a tokenizer to standard out, as the suggestion engine decodes it.

from nextwordpredict.tokenizer import SentencePieceTokenizer, HuggingFaceTokenizer
from nextwordpredict.sampling import is_lexical
import argparse
from sys import exit

if __name__ == "__main__":

    parser = argparse.ArgumentParser()
    parser.add_argument("--model-name",
                        help="Model name of causal model")
    parser.add_argument("--tokenizer",
                        help="SentencePiece model file")
    parser.add_argument("--lexical", action="store_true",
                        help="Only dump tokens that can be suggested")
    args = parser.parse_args()

    if args.tokenizer:
        tokenizer = SentencePieceTokenizer(model_path=args.tokenizer)
    else:
        tokenizer = HuggingFaceTokenizer(lang_model_name=args.model_name)
    if not tokenizer.load():
        exit(1)

    for i in range(tokenizer.vocab_size):
        token = tokenizer.decode(i)
        if not args.lexical or is_lexical(token):
            print(f"%d\t'%s'" % (i, token))
    tokenizer.close()
