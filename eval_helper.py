# Home to code we want to share between the scripts that run the suggestion models.

from datasets import load_dataset
import re
from torch import set_num_threads
from psutil import cpu_count
from typing import List
from datetime import datetime
from socket import gethostname
from timeit import default_timer as timer
from sys import stderr
from argparse import ArgumentParser, Namespace
from nextwordpredict.causal import CausalSuggestionModel
from nextwordpredict.context import DEFAULT_PROMPT_TEMPLATE, DEFAULT_CONTEXT_WINDOW
from nextwordpredict.language_model import LanguageModel
from nextwordpredict.tokenizer import TokenizerService, SentencePieceTokenizer, HuggingFaceTokenizer
from nextwordpredict.runtime import ModelRuntime
from nextwordpredict.torch_runtime import TorchModelRuntime
from nextwordpredict.onnx_runtime import OnnxModelRuntime

def add_args(parser: ArgumentParser) -> None:
    """
    Add command line switches that are the same between scripts
    :param parser:
    :return:
    """
    parser.add_argument("--model-name", help="Model name of LLM on Hugging Face, also names its tokenizer")
    parser.add_argument("--model-dir", help="Local directory to load fine-tuned LLM")
    parser.add_argument("--onnx-model", help="Exported decoder to run with ONNX Runtime instead of PyTorch")
    parser.add_argument("--tokenizer", help="SentencePiece model file, default uses the tokenizer of --model-name")
    parser.add_argument("--use-mps", action="store_true", help="Use MPS Apple Silicon GPU during inference")
    parser.add_argument("--use-cuda", action="store_true", help="Use CUDA GPU during inference")
    parser.add_argument("--fp16", action="store_true", help="Convert model to fp16 (CUDA only)")
    parser.add_argument("--num-cores", type=int, help="Limit pytorch to specified number of cores")
    parser.add_argument("--lora-path", help="Hugging Face or local path to LoRA adapter")
    parser.add_argument("--context-window", type=int, default=DEFAULT_CONTEXT_WINDOW, help="Positions in the key/value cache")
    parser.add_argument("--prompt-template", help="Conversation template, {text} is replaced by the typed text")
    parser.add_argument("--prompt-template-file", help="File containing the conversation template")
    parser.add_argument("--bos-id", type=int, help="Beginning of sequence token id, default from the tokenizer")
    parser.add_argument("--candidates", type=int, default=200, help="Size of the top-K candidate pool")
    parser.add_argument("--nbest", type=int, default=5, help="Number of suggestions to make")
    parser.add_argument("--temperature", type=float, default=1.0, help="Sampling temperature")
    parser.add_argument("--seed", type=int, help="Seed for the sampling random generator")
    parser.add_argument("--verbose", type=int, default=0, help="0: quiet, 1: print candidate pools")

def check_args_for_errors(args: Namespace) -> None:
    """
    Check for fatal errors for command line switches shared by scripts
    :param args: Command line arguments passed to main function
    :return:
    """
    if not args.model_name and not args.onnx_model:
        print("ERROR: Must specify either --model-name or --onnx-model!", file = stderr)
        exit(1)
    if args.onnx_model and not args.tokenizer and not args.model_name:
        print("ERROR: ONNX model needs a tokenizer from --tokenizer or --model-name!", file = stderr)
        exit(1)
    if args.onnx_model and (args.lora_path or args.fp16):
        print("ERROR: --lora-path and --fp16 only apply to PyTorch models!", file = stderr)
        exit(1)
    if args.prompt_template and args.prompt_template_file:
        print("ERROR: Only one of --prompt-template or --prompt-template-file can be specified!", file = stderr)
        exit(1)
    if args.temperature <= 0:
        print(f"ERROR: --temperature must be greater than zero!", file = stderr)
        exit(1)
    if args.context_window <= 0:
        print(f"ERROR: --context-window must be greater than zero!", file = stderr)
        exit(1)
    if args.nbest <= 0 or args.candidates <= 0:
        print(f"ERROR: --nbest and --candidates must be greater than zero!", file = stderr)
        exit(1)

def check_args_for_warnings(args: Namespace) -> None:
    """
    Check for suspicious things in the command line switches shared by scripts
    :param args: Command line arguments passed to main function
    :return:
    """
    if args.candidates < args.nbest:
        print(f"WARNING: --candidates is smaller than --nbest, at most {args.candidates} suggestions can be made!", file = stderr)
    if args.fp16 and not args.use_cuda:
        print(f"WARNING: --fp16 only has an effect with --use-cuda!", file = stderr)

def _load_phrases_plaintext(filename: str,
                            phrase_limit: int = None) -> List[str]:
    """
    Load phrases from a plaintext file with a phrase on each line
    :param filename: Filename containing the phrases
    :param phrase_limit: Optional limit to the first so many lines
    :return: List of phrases
    """
    with open(filename, "r", encoding="utf-8") as phrase_file:
        phrases = [phrase.strip() for phrase in phrase_file]

    phrases = [phrase for phrase in phrases if len(phrase) > 0]
    if phrase_limit:
        phrases = phrases[:phrase_limit]
    return phrases

def _load_phrases_dataset(name: str,
                          split: str,
                          phrase_col: str = "text",
                          phrase_limit: int = None) -> List[str]:
    """
    Load phrases from a dataset
    :param name: Name of the dataset
    :param split: Name of the split in the dataset, e.g. train or validation
    :param phrase_col: Name of the column in the dataset containing the phrases
    :param phrase_limit: Optional limit to the first so many rows
    :return: List of phrases
    """
    dataset = load_dataset(path=name, split=split)
    phrases = [phrase.strip() for phrase in dataset[phrase_col]]

    if phrase_limit:
        phrases = phrases[:phrase_limit]
    return phrases

def normalize_phrase(phrase: str,
                     lower: bool = False,
                     strip_symbols: bool = False) -> str:
    """
    Perform text normalization on a phrase
    :param phrase: Original phrase
    :param lower: Lowercase the phrase
    :param strip_symbols: Converts characters besides A-Z and apostrophe to space then collapses contiguous whitespace
    :return: Normalized phrase
    """
    if lower:
        phrase = phrase.lower()
    if strip_symbols:
        phrase = re.sub(r"[^a-zA-Z']", " ", phrase)
    return " ".join(phrase.split())

def count_words(phrases: List[str]) -> int:
    """
    Count the number of words in a list of phrases
    :param phrases: List of phrases
    :return: Integer count
    """
    count = 0
    for phrase in phrases:
        count += len(phrase.split())
    return count

def set_cpu_cores(args: Namespace) -> None:
    """
    Optimize settings for CPU or GPU computation
    :param args: Command line arguments passed to main function
    :return:
    """
    if args.num_cores:
        # User has specified their desired number of cores
        set_num_threads(args.num_cores)
        print(f"Limiting pytorch to {args.num_cores} cores")
    elif args.use_cuda:
        # More CPU cores do not speed up single token steps when a GPU is being used
        set_num_threads(1)
        print(f"Using CUDA, limiting pytorch to 1 core. You can override with --num-cores")
    else:
        physical_cores = cpu_count(logical=False)
        max_useful_cores = 32
        if physical_cores and physical_cores > max_useful_cores:
            set_num_threads(max_useful_cores)
            print(f"Limiting pytorch to {max_useful_cores} cores. You can override with --num-cores")

def get_device(args: Namespace) -> str:
    """
    Set the computation device string based on the command line switches
    :param args:
    :return: String: cpu, mps, or cuda
    """
    device = "cpu"
    if args.use_mps:
        device = "mps"
    elif args.use_cuda:
        device = "cuda"
    return device

def load_phrases(args: Namespace,
                 quiet: bool = False) -> List[str]:
    """
    Load the phrases we are going to simulate writing
    :param args: Command line arguments passed to main function
    :param quiet: Can be used to supress informational output
    :return: List of phrases
    """
    if args.phrases:
        phrases = _load_phrases_plaintext(filename=args.phrases, phrase_limit=args.phrase_limit)
    else:
        phrases = _load_phrases_dataset(name=args.dataset,
                                        split=args.dataset_split,
                                        phrase_limit=args.phrase_limit,
                                        phrase_col=args.dataset_phrase_col)
    phrases = [normalize_phrase(phrase, lower=args.lower, strip_symbols=args.strip_symbols) for phrase in phrases]
    phrases = [phrase for phrase in phrases if len(phrase) > 0]
    if len(phrases) == 0:
        print(f"ERROR: All phrases were filtered out!", file = stderr)
        exit(1)

    if not quiet:
        print(f"Loaded {len(phrases)} phrases, words = {count_words(phrases)}")
        print(f"First phrase: '{phrases[0]}'")
        print(f"Last phrase: '{phrases[-1]}'")
    return phrases

def print_startup_info(args: Namespace) -> None:
    """
    Handy stuff to print out in our log files at the start of a run
    :param args: Command line arguments passed to main function
    :return: None
    """
    print(f"START: {datetime.now()}")
    print(f"ARGS: {args}")
    print(f"HOSTNAME: {gethostname()}")

def prep_prompt_template(args: Namespace) -> None:
    """
    Handles optional prompt template loading from a file
    :param args: Command line arguments passed to main function
    :return:
    """
    if args.prompt_template_file:
        try:
            with open(args.prompt_template_file, "r", encoding="utf-8") as f:
                args.prompt_template = f.read().rstrip("\n")
        except FileNotFoundError:
            print(f"ERROR: cannot open prompt template file: {args.prompt_template_file}!", file = stderr)
            exit(1)
    elif not args.prompt_template:
        args.prompt_template = DEFAULT_PROMPT_TEMPLATE

    # Allow passing in of newlines on the command line
    args.prompt_template = args.prompt_template.replace("\\n", "\n")
    if "{text}" not in args.prompt_template:
        print(f"WARNING: prompt template has no {{text}} placeholder, typed text will be ignored!", file = stderr)

def load_tokenizer(args: Namespace) -> TokenizerService:
    """
    Create the tokenizer service, it is loaded along with the model
    :param args: Command line arguments passed to main function
    :return: TokenizerService
    """
    if args.tokenizer:
        return SentencePieceTokenizer(model_path=args.tokenizer)
    return HuggingFaceTokenizer(lang_model_name=args.model_name)

def load_runtime(args: Namespace,
                 device: str) -> ModelRuntime:
    """
    Create the model runtime selected by the command line switches
    :param args: Command line arguments passed to main function
    :param device: Device to load a PyTorch model on
    :return: ModelRuntime
    """
    if args.onnx_model:
        providers = ["CUDAExecutionProvider", "CPUExecutionProvider"] if args.use_cuda else None
        return OnnxModelRuntime(model_path=args.onnx_model,
                                context_window=args.context_window,
                                providers=providers)
    return TorchModelRuntime(lang_model_name=args.model_name,
                             lm_path=args.model_dir,
                             lm_device=device,
                             fp16=args.fp16,
                             lora_path=args.lora_path,
                             context_window=args.context_window)

def load_language_model(args: Namespace,
                        device: str,
                        quiet: bool = False) -> LanguageModel:
    """
    Load the suggestion model shared by all scripts.
    :param args: Command line arguments passed to main function
    :param device: Device to load the model on
    :param quiet: Can be used to supress informational output
    :return: LanguageModel object
    """
    start = timer()
    if not quiet:
        print(f"Loading causal LLM: {args.onnx_model or args.model_name}, model directory {args.model_dir}")
    lm = CausalSuggestionModel(runtime=load_runtime(args, device),
                               tokenizer=load_tokenizer(args),
                               prompt_template=args.prompt_template,
                               bos_id=args.bos_id,
                               num_candidates=args.candidates,
                               seed=args.seed,
                               verbose=args.verbose)
    lm.load()

    if not quiet:
        print(f"Model load time = {timer() - start:.2f}")
    return lm

def update_context(context: str,
                   max_len: int,
                   previous_add: str = "") -> str:
    """
    Drops words from the front of a string until the length is <= max_len
    :param context: String of text
    :param max_len: Maximum length of the context
    :param previous_add: Text to add to previous context to separate sentences
    :return: Shortened context
    """
    if max_len <= 0:
        return ""
    elif len(context) > 0:
        # Add a space since this is a new sentence
        if previous_add:
            context += previous_add
        # Drop words from the front of the context to get under the limit
        while len(context) > max_len:
            pos = context.find(" ")
            # If there is no space, or it is at the very end of the string, then we fall back to truncating
            if pos != -1 and pos != len(context) - 1:
                context = context[pos + 1:]
            else:
                context = context[-max_len:]
    return context
