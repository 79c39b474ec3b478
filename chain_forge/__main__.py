from chain_forge.main import main

if __name__ == "__main__":
    main()
